"""
自定义异常类
提供更精确的错误处理和异常信息
"""

from typing import Any, Dict, Optional


class BaseApplicationError(Exception):
    """应用基础异常类"""

    default_code = "APPLICATION_ERROR"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.error_code = error_code or self.default_code
        self.details = details or {}
        super().__init__(self.message)


class DatabaseError(BaseApplicationError):
    """数据库相关异常"""
    default_code = "DATABASE_ERROR"


class ConcurrencyError(BaseApplicationError):
    """并发控制错误"""
    default_code = "CONCURRENCY_CONFLICT"


class ValidationError(BaseApplicationError):
    """数据验证异常"""
    default_code = "VALIDATION_ERROR"


class NotFoundError(BaseApplicationError):
    """资源不存在"""
    default_code = "RESOURCE_NOT_FOUND"


class BookingNotFoundError(NotFoundError):
    """订餐记录不存在"""
    default_code = "BOOKING_NOT_FOUND"

    def __init__(self, message: str = "Booking not found.", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details=details)


class UserNotFoundError(NotFoundError):
    """用户不存在"""
    default_code = "USER_NOT_FOUND"

    def __init__(self, message: str = "User not found.", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details=details)


class ConflictError(BaseApplicationError):
    """与当前状态冲突"""
    default_code = "CONFLICT"


class InvalidTransitionError(ConflictError):
    """状态转换不合法"""
    default_code = "INVALID_STATUS_TRANSITION"

    def __init__(self, booking_id: int, current: str, operation: str):
        super().__init__(
            f"Cannot {operation} a booking in status '{current}'.",
            details={"booking_id": booking_id, "status": current, "operation": operation},
        )


class AlreadyCollectedError(ConflictError):
    """餐食已领取"""
    default_code = "ALREADY_COLLECTED"

    def __init__(self, booking_id: int):
        super().__init__("Meal has already been collected.", details={"booking_id": booking_id})


class AuthenticationError(BaseApplicationError):
    """认证相关异常"""
    default_code = "AUTHENTICATION_FAILED"


class VerificationCodeMismatchError(AuthenticationError):
    """取餐码不匹配"""
    default_code = "VERIFICATION_CODE_MISMATCH"

    def __init__(self, booking_id: int):
        super().__init__("Invalid verification code.", details={"booking_id": booking_id})


class AuthorizationError(BaseApplicationError):
    """授权相关异常"""
    default_code = "PERMISSION_DENIED"


class AccountSuspendedError(AuthorizationError):
    """账号处于停用期"""
    default_code = "ACCOUNT_SUSPENDED"


class DeadlineExceededError(BaseApplicationError):
    """超过取消截止时间"""
    default_code = "CANCELLATION_DEADLINE_EXCEEDED"


class TimeWindowError(BaseApplicationError):
    """不在取餐时间段内"""
    default_code = "OUTSIDE_MEAL_WINDOW"


class PaymentPolicyError(BaseApplicationError):
    """违反付款策略"""
    default_code = "PAYMENT_POLICY_VIOLATION"


class LoanLimitExceededError(BaseApplicationError):
    """超出赊账额度"""
    default_code = "LOAN_LIMIT_EXCEEDED"
