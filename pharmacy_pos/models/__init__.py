"""Models package - exports the POS domain records."""
from pharmacy_pos.models.product import Product, Batch
from pharmacy_pos.models.cart_line import (
    CartLine, UNMAPPED_PREFIX, is_unmapped_product_id, new_line_id, unmapped_product_id
)
from pharmacy_pos.models.reservation import Reservation, ReservationContext, ReservationState
from pharmacy_pos.models.prescription import PrescriptionLine
from pharmacy_pos.models.checkout import PosContext, Payment, Receipt

__all__ = [
    'Product',
    'Batch',
    'CartLine',
    'UNMAPPED_PREFIX',
    'is_unmapped_product_id',
    'new_line_id',
    'unmapped_product_id',
    'Reservation',
    'ReservationContext',
    'ReservationState',
    'PrescriptionLine',
    'PosContext',
    'Payment',
    'Receipt',
]
