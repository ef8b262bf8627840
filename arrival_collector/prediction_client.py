"""
Arrival prediction client

Queries the regional open data bus arrival service for all vehicles currently
predicted at a stop. Stops are addressed either by a nine-digit regional
station id, or by a five-digit mobile stop number (the stop sub-code) that is
resolved to a station id first.
"""
import logging
import re
import xml.etree.ElementTree as ET
from typing import Any, Dict, List, Optional

import requests

from arrival_collector.errors import PredictionServiceError
from arrival_collector.tracking import StopPrediction, TrackingTarget

logger = logging.getLogger(__name__)

_REGIONAL_STATION_ID = re.compile(r"^\d{9}$")
_MOBILE_STOP_NO = re.compile(r"^\d{5}$")
_WHITESPACE = re.compile(r"\s+")

# Seoul arrival messages, e.g. "3분12초후[5번째 전]"
_MINUTES = re.compile(r"(\d+)분")
_SECONDS = re.compile(r"(\d+)초")
_STOPS_AWAY = re.compile(r"\[(\d+)번째")
_NOT_RUNNING = ("운행종료", "출발대기")


class ArrivalPredictionClient:
    """Fetches arrival predictions for stops"""

    def __init__(
        self,
        api_key: str,
        arrival_url: str,
        station_url: str,
        seoul_url: Optional[str] = None,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
        call_counter=None,
    ):
        """
        Args:
            api_key: Open data portal service key
            arrival_url: Regional arrival list endpoint
            station_url: Regional station search endpoint (mobile number lookup)
            seoul_url: Seoul stop arrival endpoint, if that backend is used
            timeout: Per-request HTTP timeout in seconds
            session: Optional requests.Session to reuse
            call_counter: Optional ApiCallCounter incremented per outbound call
        """
        self.api_key = api_key
        self.arrival_url = arrival_url
        self.station_url = station_url
        self.seoul_url = seoul_url
        self.timeout = timeout
        self.session = session or requests.Session()
        self.call_counter = call_counter
        self._station_ids: Dict[str, str] = {}  # mobile number -> station id

    def query(self, stop_id: str, stop_sub_code: Optional[str] = None) -> List[StopPrediction]:
        """
        Get predictions for every vehicle currently heading to a stop

        Args:
            stop_id: Regional station id
            stop_sub_code: Optional mobile stop number, preferred when present

        Returns:
            Predictions sorted by seconds to arrival. Empty when the stop is
            not served by a supported backend.

        Raises:
            PredictionServiceError: If the service could not be reached or
                returned an unreadable response.
        """
        if stop_sub_code:
            mobile_no = stop_sub_code.replace("-", "")
            if _MOBILE_STOP_NO.match(mobile_no):
                station_id = self._resolve_station_id(stop_id, mobile_no)
                if station_id:
                    return self._query_regional(station_id)

        if stop_id and _REGIONAL_STATION_ID.match(stop_id):
            return self._query_regional(stop_id)

        logger.debug(f"No supported arrival backend for stop {stop_id} ({stop_sub_code})")
        return []

    def query_seoul(self, ars_id: str) -> List[StopPrediction]:
        """Get predictions from the Seoul arrival service (arsId based)"""
        if not self.seoul_url:
            raise PredictionServiceError(ars_id, "Seoul arrival endpoint is not configured")

        text = self._get(ars_id, self.seoul_url, {
            "serviceKey": self.api_key,
            "arsId": ars_id.replace("-", ""),
        }).text
        return parse_seoul_arrivals(text)

    def _resolve_station_id(self, stop_id: str, mobile_no: str) -> Optional[str]:
        if mobile_no in self._station_ids:
            return self._station_ids[mobile_no]

        data = self._get_json(stop_id, self.station_url, {
            "serviceKey": self.api_key,
            "keyword": mobile_no,
            "format": "json",
        })
        stations = _as_list(_msg_body(data).get("busStationList"))
        for station in stations:
            if str(station.get("mobileNo", "")).strip() == mobile_no and station.get("stationId"):
                station_id = str(station["stationId"])
                self._station_ids[mobile_no] = station_id
                return station_id

        logger.warning(f"Mobile stop number {mobile_no} did not resolve to a station")
        return None

    def _query_regional(self, station_id: str) -> List[StopPrediction]:
        data = self._get_json(station_id, self.arrival_url, {
            "serviceKey": self.api_key,
            "stationId": station_id,
            "format": "json",
        })
        return parse_regional_arrivals(data)

    def _get(self, stop_id: str, url: str, params: Dict[str, Any]) -> requests.Response:
        self._count_call()
        try:
            resp = self.session.get(url, params=params, timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as e:
            raise PredictionServiceError(stop_id, str(e)) from e
        return resp

    def _get_json(self, stop_id: str, url: str, params: Dict[str, Any]) -> Dict[str, Any]:
        resp = self._get(stop_id, url, params)
        try:
            return resp.json()
        except ValueError as e:
            raise PredictionServiceError(stop_id, f"Invalid JSON response: {e}") from e

    def _count_call(self) -> None:
        if self.call_counter is None:
            return
        try:
            self.call_counter.increment()
        except Exception as e:
            logger.warning(f"Failed to count API call: {e}")


def _msg_body(data: Any) -> Dict[str, Any]:
    if not isinstance(data, dict):
        return {}
    return ((data.get("response") or {}).get("msgBody")) or {}


def _as_list(value: Any) -> List[Dict[str, Any]]:
    """The service returns a bare object instead of a one-element list"""
    if not value:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _to_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_regional_arrivals(data: Dict[str, Any]) -> List[StopPrediction]:
    """Parse the regional arrival list into predictions for each route's next vehicle"""
    predictions: List[StopPrediction] = []

    for item in _as_list(_msg_body(data).get("busArrivalList")):
        label = item.get("routeName") or item.get("routeNm")
        predict_minutes = _to_int(item.get("predictTime1")) or 0
        predict_seconds = _to_int(item.get("predictTimeSec1")) or predict_minutes * 60

        if not label or predict_seconds <= 0:
            continue

        predictions.append(StopPrediction(
            vehicle_label=str(label),
            predicted_seconds=predict_seconds,
            vehicle_id=str(item["routeId"]) if item.get("routeId") else None,
            vehicle_physical_id=item.get("plateNo1") or None,
            stops_away=_to_int(item.get("locationNo1")),
        ))

    predictions.sort(key=lambda p: p.predicted_seconds)
    return predictions


def parse_arrival_message(message: str, fallback_seconds: Optional[int] = None) -> Optional[int]:
    """
    Seconds until arrival from a Seoul arrival message

    Returns None when the message says the vehicle is not running.
    """
    if not message or any(marker in message for marker in _NOT_RUNNING):
        return None

    total = 0
    minutes = _MINUTES.search(message)
    seconds = _SECONDS.search(message)
    if minutes:
        total += int(minutes.group(1)) * 60
    if seconds:
        total += int(seconds.group(1))

    return total or fallback_seconds


def parse_seoul_arrivals(xml_text: str) -> List[StopPrediction]:
    """Parse a Seoul getStationByUid XML response"""
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as e:
        raise PredictionServiceError("seoul", f"Invalid XML response: {e}") from e

    header_code = root.findtext(".//headerCd")
    if header_code == "4":
        # no results for the stop
        return []
    if header_code not in (None, "0"):
        raise PredictionServiceError("seoul", root.findtext(".//headerMsg") or f"headerCd {header_code}")

    predictions: List[StopPrediction] = []
    for item in root.iter("itemList"):
        label = (item.findtext("rtNm") or "").strip()
        if not label:
            continue

        message = item.findtext("arrmsg1") or ""
        seconds = parse_arrival_message(message, _to_int(item.findtext("traTime1")))
        if not seconds or seconds <= 0:
            continue

        stops_away = _to_int(item.findtext("staOrd1"))
        if stops_away is None:
            match = _STOPS_AWAY.search(message)
            stops_away = int(match.group(1)) if match else None

        predictions.append(StopPrediction(
            vehicle_label=label,
            predicted_seconds=seconds,
            vehicle_id=(item.findtext("busRouteId") or "").strip() or None,
            vehicle_physical_id=(item.findtext("plainNo1") or "").strip() or None,
            stops_away=stops_away,
        ))

    predictions.sort(key=lambda p: p.predicted_seconds)
    return predictions


def _squash(value: Optional[str]) -> str:
    return _WHITESPACE.sub("", value or "")


def find_vehicle_prediction(
    target: TrackingTarget,
    predictions: List[StopPrediction],
) -> Optional[StopPrediction]:
    """
    Find the target's vehicle among a stop's predictions

    Precedence: exact id, then exact label, then label ignoring whitespace.
    """
    vehicle_id = str(target.vehicle_id or "")
    if vehicle_id:
        for p in predictions:
            if p.vehicle_id and str(p.vehicle_id) == vehicle_id:
                return p

    label = str(target.vehicle_label or "")
    if label:
        for p in predictions:
            if p.vehicle_label == label:
                return p

        squashed = _squash(label)
        for p in predictions:
            if _squash(p.vehicle_label) == squashed:
                return p

    return None
