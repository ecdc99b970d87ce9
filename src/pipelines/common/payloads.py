"""Boundary decoders for the two upstream payload shapes.

Nothing past this module probes raw JSON for field existence: payloads are
validated here and handed on as typed models.
"""
from __future__ import annotations

import json
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from datah.errors import FetchError, NoDataError, ParseError

DGT_SUCCESS = "SUCCESS"


def _as_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    token = str(value).strip()
    return token or None


class IneMetadata(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    latest_period: str | None = Field(default=None, alias="UltimoPeriodo")
    indicator_code: str | None = Field(default=None, alias="IndicadorCod")

    @field_validator("latest_period", "indicator_code", mode="before")
    @classmethod
    def _text(cls, value: Any) -> str | None:
        return _as_text(value)


class IneRecord(BaseModel):
    """One coded row of an INE data response.

    ``dim_1`` is the period, ``dim_2`` the geography, ``dim_3``/``dim_4`` the
    optional categorical breakdowns; ``*_t`` fields carry the labels.
    """

    model_config = ConfigDict(extra="ignore")

    dim_1: str | None = None
    dim_1_t: str | None = None
    dim_2: str | None = Field(default=None, validation_alias=AliasChoices("dim_2", "geocod"))
    dim_2_t: str | None = Field(default=None, validation_alias=AliasChoices("dim_2_t", "geodsg"))
    dim_3: str | None = None
    dim_3_t: str | None = None
    dim_4: str | None = None
    dim_4_t: str | None = None
    valor: str | None = Field(default=None, validation_alias=AliasChoices("valor", "value"))

    @field_validator("*", mode="before")
    @classmethod
    def _text(cls, value: Any) -> str | None:
        return _as_text(value)


class IneDataPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    indicator_code: str | None = Field(
        default=None, validation_alias=AliasChoices("IndicadorCod", "indicator_code")
    )
    records: list[IneRecord] = Field(validation_alias=AliasChoices("Dados", "records"))

    @field_validator("indicator_code", mode="before")
    @classmethod
    def _code(cls, value: Any) -> str | None:
        return _as_text(value)

    @field_validator("records", mode="before")
    @classmethod
    def _flatten_period_keyed(cls, value: Any) -> Any:
        # Older responses key the rows by period instead of carrying dim_1_t.
        if not isinstance(value, dict):
            return value
        rows: list[dict[str, Any]] = []
        for period, items in value.items():
            if not isinstance(items, list):
                continue
            for item in items:
                if isinstance(item, dict):
                    rows.append({"dim_1_t": period, **item})
        return rows


class DgtFeatureProperties(BaseModel):
    model_config = ConfigDict(extra="ignore")

    code: str | None = None
    name: str | None = None
    value: str | None = None

    @field_validator("*", mode="before")
    @classmethod
    def _text(cls, value: Any) -> str | None:
        return _as_text(value)


class DgtFeature(BaseModel):
    model_config = ConfigDict(extra="ignore")

    properties: DgtFeatureProperties = Field(default_factory=DgtFeatureProperties)


class DgtFeatureCollection(BaseModel):
    model_config = ConfigDict(extra="ignore")

    features: list[DgtFeature] = Field(default_factory=list)


class DgtContent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    geojson: list[Any] = Field(default_factory=list)

    @field_validator("geojson", mode="before")
    @classmethod
    def _listify(cls, value: Any) -> list[Any]:
        if value is None:
            return []
        if isinstance(value, (str, dict)):
            return [value]
        return value


class DgtEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str
    content: DgtContent = Field(default_factory=DgtContent)


def decode_ine_metadata(payload: Any, *, indicator_id: str | None = None, url: str | None = None) -> IneMetadata:
    data_obj = payload[0] if isinstance(payload, list) and payload else payload
    if not isinstance(data_obj, dict):
        raise FetchError("INE metadata response is not an object.", indicator_id=indicator_id, url=url)
    try:
        return IneMetadata.model_validate(data_obj)
    except ValidationError as exc:
        raise FetchError(f"Malformed INE metadata: {exc}", indicator_id=indicator_id, url=url) from exc


def decode_ine_data(payload: Any, *, indicator_id: str | None = None) -> IneDataPayload:
    if isinstance(payload, list):
        if not payload:
            raise ParseError("INE response is an empty array.", indicator_id=indicator_id)
        data_obj = payload[0]
    else:
        data_obj = payload
    if not isinstance(data_obj, dict):
        raise ParseError("INE response has no record container.", indicator_id=indicator_id)
    try:
        return IneDataPayload.model_validate(data_obj)
    except ValidationError as exc:
        raise ParseError(f"No usable 'Dados' records in INE response: {exc}", indicator_id=indicator_id) from exc


def decode_dgt_envelope(payload: Any, *, indicator_id: str | None = None, url: str | None = None) -> DgtEnvelope:
    if not isinstance(payload, dict):
        raise FetchError("DGT response is not an object.", indicator_id=indicator_id, url=url)
    try:
        envelope = DgtEnvelope.model_validate(payload)
    except ValidationError as exc:
        raise FetchError(f"Malformed DGT envelope: {exc}", indicator_id=indicator_id, url=url) from exc
    if envelope.type != DGT_SUCCESS:
        raise FetchError(
            f"DGT API returned non-success type '{envelope.type}'.",
            indicator_id=indicator_id,
            url=url,
        )
    return envelope


def decode_dgt_features(
    envelope: DgtEnvelope,
    *,
    indicator_id: str | None = None,
    url: str | None = None,
) -> DgtFeatureCollection:
    if not envelope.content.geojson:
        raise NoDataError("No GeoJSON data found in DGT response.", indicator_id=indicator_id, url=url)
    embedded = envelope.content.geojson[0]
    if isinstance(embedded, str):
        try:
            embedded = json.loads(embedded)
        except json.JSONDecodeError as exc:
            raise FetchError(
                f"Embedded DGT GeoJSON is not valid JSON: {exc}",
                indicator_id=indicator_id,
                url=url,
            ) from exc
    if not isinstance(embedded, dict):
        raise FetchError("Embedded DGT GeoJSON is not an object.", indicator_id=indicator_id, url=url)
    try:
        return DgtFeatureCollection.model_validate(embedded)
    except ValidationError as exc:
        raise FetchError(f"Malformed DGT feature collection: {exc}", indicator_id=indicator_id, url=url) from exc
