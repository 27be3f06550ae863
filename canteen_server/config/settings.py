from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    # 数据库配置
    database_url: str = "duckdb://./canteen_server/data/canteen.duckdb"

    # JWT配置（令牌由外部认证服务签发，这里只负责校验）
    jwt_secret_key: str = "your-secret-key"
    jwt_algorithm: str = "HS256"
    jwt_expire_hours: int = 24 * 7  # 7天

    # 支付网关配置（ZarinPal 协议）
    gateway_merchant_id: str = "00000000-0000-0000-0000-000000000000"
    gateway_sandbox: bool = True
    gateway_description: str = "Canteen reservation payment"
    gateway_timeout_seconds: float = 10.0
    gateway_max_retries: int = 3
    gateway_backoff_seconds: float = 0.5

    # 信用分与取餐规则
    initial_trust_score: int = 10
    no_show_penalty: int = 5
    pickup_cutoff_minutes: int = 30
    payment_timeout_minutes: int = 20

    # 取餐码签名密钥
    qr_secret: str = "change-me-qr-secret"

    # 后台对账/超时清理周期（秒），0 表示关闭
    sweep_interval_seconds: int = 0

    # API配置
    api_title: str = "Canteen Reservation API"
    api_version: str = "1.0.0"
    api_prefix: str = "/api/v1"

    # 开发模式
    debug: bool = False

    # 前端支付跳转地址（可选，为空时使用网关 StartPay 地址）
    payment_start_url: Optional[str] = None

    class Config:
        env_file = ".env"
        case_sensitive = False


# 全局设置实例
settings = Settings()
