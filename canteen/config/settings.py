from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    # 数据库配置
    database_url: str = "duckdb://./canteen/data/canteen.duckdb"

    # JWT配置
    jwt_secret_key: str = "your-secret-key"
    jwt_algorithm: str = "HS256"
    jwt_expire_hours: int = 24  # 自助机登录令牌有效期

    # API配置
    api_title: str = "Canteen API"
    api_version: str = "1.0.0"
    api_prefix: str = "/api/v1"

    # 食堂所在地的民用时区，所有时间窗口和截止时间都以它为准
    canteen_timezone: str = "Asia/Colombo"

    # 订餐规则
    booking_horizon_days: int = 7
    verification_code_digits: int = 4
    # 正式员工必须当场付清，取餐时不足额视为违规
    strict_permanent_pay_now: bool = True

    # 日志配置
    log_level: str = "INFO"
    log_json: bool = True

    # 开发模式
    debug: bool = False
    host: str = "127.0.0.1"
    port: int = 8000

    # 考勤机默认序列号（设备未上报SN时使用）
    default_device_serial: Optional[str] = "default_device"
    # 自助机订阅 kiosk_<SN> 频道时携带的设备密钥，未设置时只有食堂和管理员可以订阅
    kiosk_device_key: Optional[str] = None

    class Config:
        env_file = ".env"
        case_sensitive = False


# 全局设置实例
settings = Settings()
