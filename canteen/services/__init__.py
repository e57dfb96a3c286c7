"""
Business logic services.
Contains service layer implementations for core business operations.
"""

from .audit_service import AuditService
from .booking_service import BookingService, OperationResult
from .consistency_service import ConsistencyService
from .kiosk_service import KioskService
from .ledger_service import LedgerService
from .notification_service import EventDispatcher, NotificationHub, RecordingPublisher, notification_hub
from .pricing_service import PricingService
from .registry import ServiceRegistry, get_services
from .report_service import ReportService
from .user_service import UserService
from .visitor_service import VisitorService

__all__ = [
    "AuditService",
    "BookingService",
    "ConsistencyService",
    "EventDispatcher",
    "KioskService",
    "LedgerService",
    "NotificationHub",
    "OperationResult",
    "PricingService",
    "RecordingPublisher",
    "ReportService",
    "ServiceRegistry",
    "UserService",
    "VisitorService",
    "get_services",
    "notification_hub",
]
