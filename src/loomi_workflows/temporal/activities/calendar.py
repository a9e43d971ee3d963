"""
Cal.com calendar activities (REST v1).

All slot times are expressed in the business timezone; bookings are sent to
Cal.com as UTC instants with a fixed demo duration.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

import httpx
from temporalio import activity

from ...errors import ConfigurationError, TransientAPIError, json_body, raise_for_transient
from ...models import (
    BookingResult,
    CalSlot,
    CreateEventParams,
    OperationResult,
    RescheduleEventParams,
    UpdateEventEmailParams,
)
from ..config import IntegrationSettings

logger = logging.getLogger(__name__)

BOOKING_SOURCE = "loomi-temporal"


def _iso_utc(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_instant(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class CalendarActivities:
    """Availability lookup and booking mutations against Cal.com."""

    def __init__(self, settings: IntegrationSettings, http: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self._http = http or httpx.AsyncClient(timeout=30.0)

    async def aclose(self) -> None:
        await self._http.aclose()

    def _api_key(self) -> str:
        if not self.settings.cal_api_key:
            raise ConfigurationError("CAL_API_KEY environment variable is required")
        return self.settings.cal_api_key

    def _start(self, slot: CalSlot) -> datetime:
        return slot.start_at(self.settings.business_timezone)

    def _window(self, start: datetime) -> Dict[str, str]:
        end = start + timedelta(minutes=self.settings.demo_duration_minutes)
        return {"start": _iso_utc(start), "end": _iso_utc(end)}

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        params = {"apiKey": self._api_key(), **kwargs.pop("params", {})}
        try:
            response = await self._http.request(
                method,
                f"{self.settings.cal_api_base}{path}",
                params=params,
                **kwargs,
            )
        except httpx.TransportError as e:
            raise TransientAPIError("cal.com", str(e)) from e
        raise_for_transient("cal.com", response.status_code, response.text)
        return response

    @staticmethod
    def _booking_result(response: httpx.Response, start: datetime) -> BookingResult:
        """Success result; `start` is the instant sent to Cal.com."""
        data = json_body("cal.com", response)
        event_id = data.get("id")
        return BookingResult(
            success=True,
            event_id=str(event_id) if event_id is not None else data.get("uid"),
            meeting_url=data.get("meetingUrl"),
            start_at=start,
        )

    @activity.defn(name="check_availability")
    async def check_availability(self, dates: List[str]) -> List[CalSlot]:
        """
        Free slots for the given YYYY-MM-DD dates.

        Queries the range covering all dates in one call and converts every
        returned instant to a local date/time in the business timezone.
        """
        if not dates:
            return []

        tz_name = self.settings.business_timezone
        ordered = sorted(dates)
        response = await self._request(
            "GET",
            "/slots",
            params={
                "eventTypeId": self.settings.cal_event_type_id,
                "startTime": f"{ordered[0]}T00:00:00",
                "endTime": f"{ordered[-1]}T23:59:59",
                "timeZone": tz_name,
            },
        )
        if response.is_error:
            logger.warning(f"Cal.com availability error ({response.status_code}): {response.text}")
            return []

        tz = ZoneInfo(tz_name)
        wanted = set(dates)
        slots = []
        for day, entries in (json_body("cal.com", response).get("slots") or {}).items():
            for entry in entries:
                raw = entry.get("time") if isinstance(entry, dict) else entry
                if not raw:
                    continue
                local = _parse_instant(raw).astimezone(tz)
                slot = CalSlot(date=local.date().isoformat(), time=local.strftime("%H:%M"))
                if slot.date in wanted:
                    slots.append(slot)
        return sorted(set(slots), key=lambda s: (s.date, s.time))

    @activity.defn(name="create_event")
    async def create_event(self, params: CreateEventParams) -> BookingResult:
        metadata = {k: str(v) for k, v in params.metadata.items() if v is not None}
        metadata["source"] = BOOKING_SOURCE
        start = self._start(params.slot)

        body = {
            "eventTypeId": int(self.settings.cal_event_type_id),
            **self._window(start),
            "responses": {
                "name": params.name,
                "email": params.email,
                "phone": params.phone,
                "notes": params.notes,
            },
            "timeZone": self.settings.business_timezone,
            "language": "es",
            "metadata": metadata,
        }
        response = await self._request("POST", "/bookings", json=body)
        if response.is_error:
            logger.warning(f"Cal.com booking rejected ({response.status_code}): {response.text}")
            return BookingResult(success=False, error=response.text)

        result = self._booking_result(response, start)
        logger.info(f"Cal.com booking created: {result.event_id}")
        return result

    @activity.defn(name="cancel_event")
    async def cancel_event(self, event_id: str) -> OperationResult:
        response = await self._request("DELETE", f"/bookings/{event_id}")
        if response.is_error:
            logger.warning(f"Cal.com cancel error for {event_id}: {response.text}")
            return OperationResult(success=False, error=response.text)
        return OperationResult(success=True, id=event_id)

    @activity.defn(name="reschedule_event")
    async def reschedule_event(self, params: RescheduleEventParams) -> BookingResult:
        """Move an existing booking to a new slot or instant; the event id is kept."""
        start = params.new_start or self._start(params.new_slot)
        response = await self._request(
            "PATCH",
            f"/bookings/{params.event_id}",
            json=self._window(start),
        )
        if response.is_error:
            logger.warning(f"Cal.com reschedule error for {params.event_id}: {response.text}")
            return BookingResult(success=False, error=response.text)

        result = self._booking_result(response, start)
        if not result.event_id:
            result = result.model_copy(update={"event_id": params.event_id})
        return result

    @activity.defn(name="update_event_email")
    async def update_event_email(self, params: UpdateEventEmailParams) -> OperationResult:
        response = await self._request(
            "PATCH",
            f"/bookings/{params.event_id}",
            json={"responses": {"email": params.email}},
        )
        if response.is_error:
            return OperationResult(success=False, error=response.text)
        return OperationResult(success=True, id=params.event_id)
