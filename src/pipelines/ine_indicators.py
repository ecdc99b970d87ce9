from __future__ import annotations

import pandas as pd

from datah.errors import DatahError, FetchError, NoDataError
from datah.logging import get_logger
from datah.settings import Settings
from pipelines.common.http_client import HttpClient
from pipelines.common.payloads import decode_ine_metadata
from pipelines.common.response_parser import parse_ine_response

SOURCE = "INE"
METADATA_PATH = "/ine/json_indicador/pindicaMeta.jsp"
DATA_PATH = "/ine/json_indicador/pindicaNoLevel.jsp"
MUNICIPALITY_LEVEL = "lvl@5"
PERIOD_PREFIX = "S7A"

# Resident population is published for every municipality; its census year
# doubles as the municipality reference list.
POPULATION_INDICATOR = "0011292"
POPULATION_REFERENCE_YEAR = 2021

STATIC_MUNICIPALITIES = (
    ("0101", "Águeda"),
    ("0102", "Albergaria-a-Velha"),
    ("0103", "Anadia"),
    ("1106", "Lisboa"),
    ("1308", "Braga"),
    ("1311", "Porto"),
)


class IneClient:
    """Client for the INE indicator database JSON API.

    The API has no literal for "latest", so a request without an explicit
    year first asks the metadata endpoint for ``UltimoPeriodo`` and then
    queries every municipality (``Dim2=lvl@5``) for that period.
    """

    def __init__(self, http_client: HttpClient, *, base_url: str, lang: str = "PT"):
        self.http_client = http_client
        self.base_url = base_url.rstrip("/")
        self.lang = lang
        self.logger = get_logger("ine_client")

    @classmethod
    def from_settings(cls, settings: Settings, http_client: HttpClient) -> "IneClient":
        return cls(http_client, base_url=settings.ine_base_url, lang=settings.ine_lang)

    @property
    def metadata_url(self) -> str:
        return f"{self.base_url}{METADATA_PATH}"

    @property
    def data_url(self) -> str:
        return f"{self.base_url}{DATA_PATH}"

    def latest_period(self, code: str, *, indicator_id: str | None = None) -> str:
        try:
            payload = self.http_client.get_json(
                self.metadata_url,
                params={"varcd": code, "lang": self.lang},
            )
        except FetchError as exc:
            raise exc.for_indicator(indicator_id or code)
        metadata = decode_ine_metadata(payload, indicator_id=indicator_id or code, url=self.metadata_url)
        if not metadata.latest_period:
            raise FetchError(
                f"Could not resolve latest period for INE indicator {code}.",
                indicator_id=indicator_id or code,
                url=self.metadata_url,
            )
        return metadata.latest_period

    def fetch_indicator_data(
        self,
        code: str,
        *,
        year: int | str | None = None,
        first_filter: str | None = None,
        second_filter: str | None = None,
        indicator_id: str | None = None,
    ) -> pd.DataFrame:
        label = indicator_id or code
        if year is None or str(year).strip() == "":
            period = self.latest_period(code, indicator_id=label)
            self.logger.info("ine_latest_period_resolved", indicator_id=label, code=code, period=period)
        else:
            period = str(year).strip()

        params = {
            "op": "2",
            "varcd": code,
            "Dim1": f"{PERIOD_PREFIX}{period}",
            "Dim2": MUNICIPALITY_LEVEL,
            "lang": self.lang,
        }
        try:
            payload = self.http_client.get_json(self.data_url, params=params)
        except FetchError as exc:
            raise exc.for_indicator(label)

        if payload is None or (isinstance(payload, (list, dict)) and len(payload) == 0):
            raise NoDataError(f"No data returned for INE indicator {code}.", indicator_id=label, url=self.data_url)

        frame = parse_ine_response(
            payload,
            indicator_id=label,
            first_filter=first_filter,
            second_filter=second_filter,
        )
        if frame.empty:
            raise NoDataError(
                f"INE indicator {code} returned zero usable municipality rows for period {period}.",
                indicator_id=label,
                url=self.data_url,
            )
        self.logger.info(
            "ine_indicator_parsed",
            indicator_id=label,
            code=code,
            period=period,
            municipalities=int(len(frame)),
        )
        return frame

    def fetch_municipalities_reference(
        self,
        fallback_names: pd.DataFrame | None = None,
    ) -> pd.DataFrame:
        """Municipality key → name list, degrading to known names on failure."""
        try:
            population = self.fetch_indicator_data(
                POPULATION_INDICATOR,
                year=POPULATION_REFERENCE_YEAR,
                indicator_id="municipalities_reference",
            )
        except DatahError as exc:
            self.logger.warning("municipalities_reference_fallback", error=str(exc))
            if fallback_names is not None and not fallback_names.empty:
                return fallback_names[["municipality_key", "name"]].copy()
            return static_municipalities()

        municipalities = (
            population[["municipality_key", "name"]]
            .dropna(subset=["municipality_key"])
            .drop_duplicates(subset=["municipality_key"])
            .sort_values("municipality_key")
            .reset_index(drop=True)
        )
        self.logger.info("municipalities_reference_fetched", municipalities=int(len(municipalities)))
        return municipalities


def static_municipalities() -> pd.DataFrame:
    return pd.DataFrame(list(STATIC_MUNICIPALITIES), columns=["municipality_key", "name"])


def to_raw_observations(frame: pd.DataFrame, indicator_id: str) -> pd.DataFrame:
    result = frame.rename(columns={"value": "raw_value"}).assign(indicator_id=indicator_id, source=SOURCE)
    return result[["municipality_key", "indicator_id", "raw_value", "source", "period", "name"]]

