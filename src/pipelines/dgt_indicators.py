from __future__ import annotations

import pandas as pd

from datah.errors import FetchError, NoDataError
from datah.logging import get_logger
from datah.settings import Settings
from pipelines.common.geo_keys import pad_observatory_key
from pipelines.common.http_client import HttpClient
from pipelines.common.payloads import decode_dgt_envelope, decode_dgt_features
from pipelines.common.response_parser import parse_numeric

SOURCE = "DGT"
LOAD_PATH = "/metrics/load"
LEVEL_MUNICIPALITY = 5
TIME_MOST_RECENT = 1
RESULT_COLUMNS = ["municipality_key", "value", "name"]

REQUEST_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7)",
    "Accept": "application/json",
}
# Map-rendering hints the observatory endpoint expects; passed through unchanged.
RENDERING_PARAMS = {
    "classification": "2",
    "numclasses": "5",
    "indicator_type": "0",
    "precision": "1",
    "columns": "category_time",
    "rows": "category_geo",
    "colors": "#FED976,#FD8D3C,#FC4E2A,#E31A1C,#B10026,#770038,#4D0025",
}


class DgtClient:
    """Client for the DGT territory observatory (``ngGeoAPI``)."""

    def __init__(self, http_client: HttpClient, *, base_url: str):
        self.http_client = http_client
        self.base_url = base_url.rstrip("/")
        self.logger = get_logger("dgt_client")

    @classmethod
    def from_settings(cls, settings: Settings, http_client: HttpClient) -> "DgtClient":
        return cls(http_client, base_url=settings.dgt_base_url)

    @property
    def load_url(self) -> str:
        return f"{self.base_url}{LOAD_PATH}"

    def build_params(self, indicator_id: int, *, level: int, time: int) -> dict[str, str]:
        return {
            "par": "observatorio",
            "mod": "metrics",
            "param": str(indicator_id),
            "type": "0",
            "table": "t_new_observatorio_dat",
            "identifier": "0",
            "query": f"and category_geo = {level} and category_time = {time}",
            "lang": "pt",
            **RENDERING_PARAMS,
        }

    def fetch_indicator_data(
        self,
        indicator_id: int | str,
        *,
        level: int = LEVEL_MUNICIPALITY,
        time: int = TIME_MOST_RECENT,
        label: str | None = None,
    ) -> pd.DataFrame:
        label = label or str(indicator_id)
        try:
            numeric_id = int(str(indicator_id).strip())
        except ValueError as exc:
            raise FetchError(
                f"DGT indicator id must be numeric, got '{indicator_id}'.",
                indicator_id=label,
                url=self.load_url,
            ) from exc

        try:
            payload = self.http_client.get_json(
                self.load_url,
                params=self.build_params(numeric_id, level=level, time=time),
                headers=REQUEST_HEADERS,
            )
        except FetchError as exc:
            raise exc.for_indicator(label)

        envelope = decode_dgt_envelope(payload, indicator_id=label, url=self.load_url)
        collection = decode_dgt_features(envelope, indicator_id=label, url=self.load_url)

        rows: list[dict[str, object]] = []
        invalid_codes: list[str] = []
        for feature in collection.features:
            properties = feature.properties
            key = pad_observatory_key(properties.code)
            if key is None:
                invalid_codes.append(str(properties.code))
                continue
            value = parse_numeric(properties.value)
            if value is None:
                continue
            rows.append({"municipality_key": key, "value": value, "name": properties.name})

        if invalid_codes:
            self.logger.warning(
                "dgt_invalid_geographic_codes",
                indicator_id=label,
                count=len(invalid_codes),
                sample=invalid_codes[:5],
            )
        if not rows:
            raise NoDataError(
                f"DGT indicator {numeric_id} returned no usable municipality rows.",
                indicator_id=label,
                url=self.load_url,
            )

        frame = pd.DataFrame(rows, columns=RESULT_COLUMNS).drop_duplicates(
            subset=["municipality_key"], keep="first"
        )
        self.logger.info(
            "dgt_indicator_parsed",
            indicator_id=label,
            dgt_id=numeric_id,
            municipalities=int(len(frame)),
        )
        return frame.reset_index(drop=True)


def to_raw_observations(frame: pd.DataFrame, indicator_id: str) -> pd.DataFrame:
    result = frame.rename(columns={"value": "raw_value"}).assign(
        indicator_id=indicator_id,
        source=SOURCE,
        period=None,
    )
    return result[["municipality_key", "indicator_id", "raw_value", "source", "period", "name"]]
