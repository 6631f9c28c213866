"""Reservation proxy and reservation context."""
import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from pharmacy_pos.exceptions import ConfigurationError


class ReservationState(enum.Enum):
    """
    Client-side view of a reservation.

    Lifecycle:
        REQUESTED -> ACTIVE -> EXTENDED (update)
                            -> RELEASED
                            -> EXPIRED (inferred from expires_at, server is authoritative)
    """
    REQUESTED = 'REQUESTED'
    ACTIVE = 'ACTIVE'
    EXTENDED = 'EXTENDED'
    RELEASED = 'RELEASED'
    EXPIRED = 'EXPIRED'


@dataclass(frozen=True)
class Reservation:
    """Read-through proxy of a server-side stock hold."""

    reservation_id: str
    product_id: Optional[str]
    quantity: int
    batch_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    state: ReservationState = ReservationState.ACTIVE

    def __repr__(self):
        return f"<Reservation(id={self.reservation_id!r}, qty={self.quantity}, state={self.state.value})>"

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def effective_state(self, now: datetime) -> ReservationState:
        """State with lazy expiry applied. Needs re-reservation before checkout when EXPIRED."""
        if self.state in (ReservationState.ACTIVE, ReservationState.EXTENDED) and self.is_expired(now):
            return ReservationState.EXPIRED
        return self.state


@dataclass(frozen=True)
class ReservationContext:
    """Who is reserving: company and location are mandatory."""

    company_id: Optional[str]
    location_id: Optional[str]
    patient_id: Optional[str] = None
    prescription_line_id: Optional[str] = None

    def validate(self) -> None:
        if not self.company_id or not self.location_id:
            raise ConfigurationError('Missing company or location')

