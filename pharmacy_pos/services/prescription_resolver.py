"""
Prescription Resolver - turns free-text prescription lines into cart lines.

Per line, the product id is resolved through a fallback chain:

    1. first suggested_product_ids entry
    2. medication-name normalization lookup
    3. free-text product search
    4. unmapped line (synthetic product id, zero price, no reservation)

then the product is fetched, its default batch chosen and a reservation
attempted. A failure on one line never stops the others; failures are
collected in the ResolutionReport and logged once at the end.
"""
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, Iterable, List, Optional

from pharmacy_pos.exceptions import PosError
from pharmacy_pos.models import (
    CartLine, PrescriptionLine, Reservation, ReservationContext, unmapped_product_id
)
from pharmacy_pos.services.inventory_client import InventoryClient

logger = logging.getLogger(__name__)

ReserveFn = Callable[[str, Optional[str], int, ReservationContext, Optional[str]], Reservation]
AppendFn = Callable[[CartLine], Optional[CartLine]]


@dataclass(frozen=True)
class LineError:
    line: PrescriptionLine
    stage: str
    message: str

    def describe(self) -> str:
        return f"line {self.line.label}: {self.stage} failed ({self.message})"


@dataclass
class ResolutionReport:
    """Outcome of one prescription import batch."""

    emitted: List[CartLine] = field(default_factory=list)
    errors: List[LineError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    @property
    def unmapped_count(self) -> int:
        return sum(1 for line in self.emitted if line.is_unmapped)

    @property
    def unbacked_count(self) -> int:
        return sum(1 for line in self.emitted if not line.reservation_id and not line.is_unmapped)

    @property
    def error_message(self) -> Optional[str]:
        if not self.errors:
            return None
        return '; '.join(error.describe() for error in self.errors)

    def to_dict(self):
        return {
            'emitted': len(self.emitted),
            'unmapped': self.unmapped_count,
            'unbacked': self.unbacked_count,
            'errors': [error.describe() for error in self.errors],
            'error_message': self.error_message,
        }


class PrescriptionResolver:
    """Resolves prescription lines against the catalog and reserves them."""

    def __init__(self, inventory: InventoryClient):
        self.inventory = inventory

    def resolve_product_id(self, line: PrescriptionLine) -> Optional[str]:
        """Run the fallback chain; None when every stage came back empty."""
        if line.suggested_product_ids:
            return line.suggested_product_ids[0]

        name = (line.product_name or '').strip()
        if not name:
            return None

        candidates = self.inventory.normalize_medication(name)
        if candidates:
            return candidates[0]

        matches = self.inventory.search_products(name)
        if matches:
            return matches[0].id

        return None

    def resolve_and_reserve(
        self,
        lines: Iterable[PrescriptionLine],
        context: ReservationContext,
        reserve_fn: ReserveFn,
        append: AppendFn,
    ) -> ResolutionReport:
        """
        Resolve, reserve and append every line.

        Args:
            lines: prescription lines in import order
            context: company/location/patient of the clerk session
            reserve_fn: reservation call (ReservationClient.reserve)
            append: receives each finished CartLine (CartStore.add)

        Returns:
            ResolutionReport with the emitted lines and the aggregated errors.
        """
        report = ResolutionReport()

        for line in lines:
            try:
                cart_line = self._build_line(line, context, reserve_fn, report)
                added = append(cart_line)
                report.emitted.append(added if isinstance(added, CartLine) else cart_line)
            except Exception as e:
                logger.warning(f"[RX] failed to process prescription line {line.label}: {e}")
                report.errors.append(LineError(line, 'processing', str(e) or e.__class__.__name__))

        if report.errors:
            logger.warning(f"[RX] prescription import finished with {len(report.errors)} error(s): "
                           f"{report.error_message}")
        else:
            logger.info(f"[RX] prescription import finished: {len(report.emitted)} line(s)")
        return report

    def _build_line(self, line: PrescriptionLine, context: ReservationContext,
                    reserve_fn: ReserveFn, report: ResolutionReport) -> CartLine:
        qty = max(1, int(line.qty or 1))
        product_id = self.resolve_product_id(line)

        if not product_id:
            logger.info(f"[RX] no catalog match for {line.product_name!r}, adding unmapped line")
            return CartLine(
                product_id=unmapped_product_id(line.product_name),
                display_name=line.product_name,
                unit_price=Decimal('0'),
                quantity=qty,
                prescription_line_id=line.id,
            )

        product = self.inventory.get_product(product_id)
        if product is None:
            logger.warning(f"[RX] product {product_id} for {line.product_name!r} could not be fetched")
            return CartLine(
                product_id=product_id,
                display_name=line.product_name or product_id,
                unit_price=Decimal('0'),
                quantity=qty,
                prescription_line_id=line.id,
            )

        batch_id = product.default_batch_id
        reservation = None
        try:
            reservation = reserve_fn(product_id, batch_id, qty, context, line.id)
        except Exception as e:
            message = e.message if isinstance(e, PosError) else (str(e) or e.__class__.__name__)
            logger.warning(f"[RX] reservation failed for {product_id} ({line.label}): {message}")
            report.errors.append(LineError(line, 'reservation', message))

        return CartLine(
            product_id=product_id,
            batch_id=batch_id,
            display_name=product.name or line.product_name,
            sku=product.sku,
            unit_price=product.price,
            quantity=qty,
            tax_rate_percent=product.tax_rate_percent,
            reservation_id=reservation.reservation_id if reservation else None,
            reservation_expires_at=reservation.expires_at if reservation else None,
            prescription_line_id=line.id,
        )
