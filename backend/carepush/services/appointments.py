"""Appointment lookups used to render appointment reminders."""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional

import httpx

logger = logging.getLogger(__name__)


@dataclass
class AppointmentInfo:
    """Display data needed for an appointment reminder."""
    appointment_id: str
    patient_id: str
    doctor_name: str
    appointment_date: date
    appointment_time: str

    @property
    def formatted_date(self) -> str:
        return self.appointment_date.strftime("%m/%d/%Y")


class AppointmentDirectory(ABC):
    """Collaborator interface for fetching appointment details."""

    @abstractmethod
    async def get_appointment(self, appointment_id: str) -> Optional[AppointmentInfo]:
        """Return the appointment, or None when it does not exist."""


class HttpAppointmentDirectory(AppointmentDirectory):
    """Fetches appointments from the appointment service over HTTP."""

    def __init__(self, base_url: str, timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    @staticmethod
    def parse(data: dict) -> AppointmentInfo:
        """Build AppointmentInfo from the appointment service's JSON shape."""
        appointment = data.get("appointment", data)
        doctor_user = (appointment.get("doctor") or {}).get("user") or {}
        doctor_name = f"{doctor_user.get('firstName', '')} {doctor_user.get('lastName', '')}".strip()
        raw_date = appointment["appointmentDate"]
        return AppointmentInfo(
            appointment_id=str(appointment["id"]),
            patient_id=str(appointment["patientId"]),
            doctor_name=doctor_name or "Unknown",
            appointment_date=datetime.fromisoformat(raw_date.replace("Z", "+00:00")).date(),
            appointment_time=appointment.get("appointmentTime", ""),
        )

    async def get_appointment(self, appointment_id: str) -> Optional[AppointmentInfo]:
        url = f"{self._base_url}/{appointment_id}"
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.get(url)
                if response.status_code == 404:
                    logger.warning(f"Appointment not found: {appointment_id}")
                    return None
                response.raise_for_status()
                return self.parse(response.json())
        except httpx.HTTPError as e:
            logger.error(f"Failed to fetch appointment {appointment_id}: {e}")
            return None
        except (KeyError, ValueError) as e:
            logger.error(f"Unexpected appointment payload for {appointment_id}: {e}")
            return None
