"""
后台清理任务
定期执行：超时未支付清理、待支付对账、超时未取餐处理
"""

import asyncio
from typing import Any, Dict, Optional

from ..config.settings import settings
from ..core.database import DatabaseManager, db_manager
from ..core.logger import get_logger
from .payment_gateway import PaymentGateway
from .payment_service import PaymentService
from .reservation_service import ReservationService

logger = get_logger(__name__)


def run_sweeps(db: Optional[DatabaseManager] = None,
               gateway: Optional[PaymentGateway] = None) -> Dict[str, Any]:
    """执行一轮清理，返回各步骤结果"""
    db = db or db_manager
    reservations = ReservationService(db)
    payments = PaymentService(db, gateway)

    # 先对账再清理，避免删除网关侧已扣款的预订
    reconciled = payments.reconcile_pending()
    expired = reservations.expire_unpaid()
    no_shows = reservations.mark_no_shows()
    return {"reconciled": reconciled, "expired": expired, "no_shows": no_shows}


async def start_sweep_scheduler(db: Optional[DatabaseManager] = None):
    """按 sweep_interval_seconds 周期运行清理，数据库和网关调用放到工作线程"""
    interval = settings.sweep_interval_seconds
    if interval <= 0:
        logger.info("sweep scheduler disabled")
        return

    logger.info(f"sweep scheduler started, interval {interval}s")
    while True:
        await asyncio.sleep(interval)
        try:
            result = await asyncio.to_thread(run_sweeps, db)
            if result["expired"] or result["no_shows"] or result["reconciled"]["resolved"]:
                logger.info(f"sweep result: {result}")
        except Exception as e:
            logger.error(f"sweep scheduler error: {e}")
