"""
路由共用依赖
服务实例按请求构造，数据库和支付网关可在测试中通过 dependency_overrides 替换
"""

from fastapi import Depends

from ..core.database import DatabaseManager, get_db
from ..services import (
    CatalogService, ConsistencyService, DeliveryService, PaymentGateway, PaymentService,
    ReportService, ReservationService, TrustService, UserService, get_gateway,
)


def get_payment_gateway() -> PaymentGateway:
    return get_gateway()


def get_reservation_service(db: DatabaseManager = Depends(get_db)) -> ReservationService:
    return ReservationService(db)


def get_payment_service(
    db: DatabaseManager = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> PaymentService:
    return PaymentService(db, gateway)


def get_delivery_service(db: DatabaseManager = Depends(get_db)) -> DeliveryService:
    return DeliveryService(db)


def get_trust_service(db: DatabaseManager = Depends(get_db)) -> TrustService:
    return TrustService(db)


def get_user_service(db: DatabaseManager = Depends(get_db)) -> UserService:
    return UserService(db)


def get_catalog_service(db: DatabaseManager = Depends(get_db)) -> CatalogService:
    return CatalogService(db)


def get_report_service(db: DatabaseManager = Depends(get_db)) -> ReportService:
    return ReportService(db)


def get_consistency_service(db: DatabaseManager = Depends(get_db)) -> ConsistencyService:
    return ConsistencyService(db)
