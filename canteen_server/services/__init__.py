"""
Business logic services.
Contains service layer implementations for the reservation engine.
"""

from .capacity_allocator import CapacityAllocator
from .catalog_service import CatalogService
from .consistency_service import ConsistencyService
from .delivery_service import DeliveryService
from .payment_gateway import PaymentGateway, ZarinpalGateway, get_gateway
from .payment_service import PaymentService
from .report_service import ReportService
from .reservation_service import ReservationService
from .trust_service import TrustService
from .user_service import UserService

__all__ = [
    "CapacityAllocator",
    "CatalogService",
    "ConsistencyService",
    "DeliveryService",
    "PaymentGateway",
    "ZarinpalGateway",
    "get_gateway",
    "PaymentService",
    "ReportService",
    "ReservationService",
    "TrustService",
    "UserService",
]
