"""
服务装配
所有服务共享同一个数据库、时钟和事件分发器，应用启动时创建一次
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from ..core.clock import Clock, system_clock
from ..core.database import DatabaseManager, db_manager
from .audit_service import AuditService
from .booking_service import BookingService
from .consistency_service import ConsistencyService
from .kiosk_service import KioskService
from .ledger_service import LedgerService
from .notification_service import EventDispatcher, Publisher, notification_hub
from .pricing_service import PricingService
from .report_service import ReportService
from .user_service import UserService
from .visitor_service import VisitorService


@dataclass
class ServiceRegistry:
    db: DatabaseManager
    clock: Clock
    dispatcher: EventDispatcher
    audit: AuditService
    pricing: PricingService
    ledger: LedgerService
    users: UserService
    bookings: BookingService
    kiosk: KioskService
    reports: ReportService
    visitors: VisitorService
    consistency: ConsistencyService

    @classmethod
    def build(cls, db: Optional[DatabaseManager] = None, clock: Optional[Clock] = None,
              publisher: Optional[Publisher] = None) -> "ServiceRegistry":
        db = db or db_manager
        clock = clock or system_clock
        dispatcher = EventDispatcher(publisher or notification_hub)
        audit = AuditService(db, clock)
        pricing = PricingService(db, clock, audit)
        ledger = LedgerService(db, clock, audit)
        users = UserService(db, clock, audit)
        return cls(
            db=db,
            clock=clock,
            dispatcher=dispatcher,
            audit=audit,
            pricing=pricing,
            ledger=ledger,
            users=users,
            bookings=BookingService(db, clock, dispatcher, pricing, ledger, audit),
            kiosk=KioskService(users, clock, dispatcher),
            reports=ReportService(db, clock, audit),
            visitors=VisitorService(db, clock, pricing, audit),
            consistency=ConsistencyService(db, clock, ledger, audit),
        )


def get_services(request: Request) -> ServiceRegistry:
    """路由依赖：取出应用装配好的服务"""
    return request.app.state.services
