from typing import Any
from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """错误响应格式（仅用于接口文档）"""
    success: bool = Field(False, description="请求失败")
    message: str = Field(description="错误消息")
    error_code: str = Field(description="错误码")
    details: Any = Field(None, description="错误详情")

    model_config = {
        "json_schema_extra": {
            "example": {
                "success": False,
                "message": "Cancellation deadline for lunch has passed.",
                "error_code": "CANCELLATION_DEADLINE_EXCEEDED",
                "details": {"meal_type": "lunch", "deadline": "2026-03-09T14:00:00+05:30"}
            }
        }
    }


# 业务接口共用的错误响应说明
ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "参数校验失败"},
    401: {"model": ErrorResponse, "description": "未认证或取餐码错误"},
    403: {"model": ErrorResponse, "description": "无权限或账号停用"},
    404: {"model": ErrorResponse, "description": "资源不存在"},
    409: {"model": ErrorResponse, "description": "状态冲突"},
    422: {"model": ErrorResponse, "description": "违反业务规则"},
}
