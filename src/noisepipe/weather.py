"""Fetch-with-fallback client for the external weather page."""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable
from datetime import datetime
from typing import Final

import requests

from .models import WeatherReading
from .store import MeasurementStore, isoformat

log = logging.getLogger("weather")

USER_AGENT: Final[str] = "Mozilla/5.0 (compatible; noisepipe-weather/1.0)"

_WIND_SPEED = re.compile(r"Windgeschwindigkeit\s*jetzt\s*[:：]\s*([\d.,]+)", re.IGNORECASE)
_WIND_DIR = re.compile(r"Windrichtung\s*[:：]\s*([\wÄÖÜäöü]+)", re.IGNORECASE)
_HUMIDITY = re.compile(r"Luftfeuchte\s*[:：]\s*([\d.,]+)", re.IGNORECASE)
_TEMPERATURE = re.compile(r"Lufttemperatur\s*[:：]\s*([\d.,]+)", re.IGNORECASE)


def _number(match: re.Match[str] | None) -> float | None:
    if match is None:
        return None
    try:
        return float(match.group(1).replace(",", "."))
    except ValueError:
        return None


def parse_weather_page(html: str, *, station: str, when: datetime) -> WeatherReading:
    """Extract the weather values from the page; missing values are None."""
    wind_dir = _WIND_DIR.search(html)
    reading = WeatherReading(
        station=station,
        time=isoformat(when.replace(second=0, microsecond=0)),
        wind_speed=_number(_WIND_SPEED.search(html)),
        wind_dir=wind_dir.group(1) if wind_dir else None,
        rel_humidity=_number(_HUMIDITY.search(html)),
        temperature=_number(_TEMPERATURE.search(html)),
    )
    if all(
        value is None
        for value in (reading.wind_speed, reading.wind_dir, reading.rel_humidity, reading.temperature)
    ):
        log.warning("parsing weather page... failure: no values found")
    return reading


class WeatherClient:
    """Fetches the weather page, stores the reading and falls back to the last one."""

    def __init__(
        self,
        store: MeasurementStore,
        url: str,
        *,
        station: str = "global",
        timeout: float = 5.0,
        max_attempts: int = 2,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.url = url
        self.station = station
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.session = session or requests.Session()
        self._sleep = sleep

    def fetch(self) -> WeatherReading | None:
        """
        Fetch and store a fresh reading.

        Returns:
            The fresh reading, or the most recent stored one when every
            attempt failed (None if there is none).
        """
        for attempt in range(1, self.max_attempts + 1):
            log.info("fetching weather (attempt %d)... start", attempt)
            try:
                resp = self.session.get(
                    self.url, timeout=self.timeout, headers={"User-Agent": USER_AGENT}
                )
                resp.raise_for_status()
            except requests.RequestException as exc:
                log.warning("fetching weather (attempt %d)... failure: %s", attempt, exc)
                if attempt < self.max_attempts:
                    self._sleep(attempt * 1.0)
                continue
            reading = parse_weather_page(resp.text, station=self.station, when=datetime.now())
            self.store.insert_weather(reading)
            log.info("fetching weather... ok")
            return reading

        fallback = self.store.latest_weather(self.station)
        log.warning(
            "fetching weather... using fallback from %s",
            fallback.time if fallback is not None else "nowhere",
        )
        return fallback
