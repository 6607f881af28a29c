"""配置加载模块 - 从环境变量和 .env 文件加载配置。"""

from enum import Enum
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RunMode(str, Enum):
    """运行模式枚举。"""

    PAPER = "paper"  # 模拟盘
    LIVE = "live"  # 实盘


class LogFormat(str, Enum):
    """日志格式枚举。"""

    JSON = "json"
    CONSOLE = "console"


class SelectionPolicy(str, Enum):
    """同一标的多条待执行候选的选取策略。"""

    NEWEST = "newest"  # 只取最新一条，用于诊断统计
    NEWEST_ELIGIBLE = "newest_eligible"  # 取最新且合格的一条，用于下单


class Settings(BaseSettings):
    """系统配置设置。

    从环境变量和 .env 文件加载配置。
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==================== 运行模式 ====================
    mode: RunMode = Field(default=RunMode.PAPER, description="运行模式: paper 或 live")

    # ==================== 券商 API ====================
    alpaca_api_key: str = Field(default="", description="Alpaca API Key")
    alpaca_api_secret: str = Field(default="", description="Alpaca API Secret")
    alpaca_base_url: str = Field(
        default="https://paper-api.alpaca.markets",
        description="交易 API 地址（默认模拟盘）",
    )
    alpaca_data_url: str = Field(
        default="https://data.alpaca.markets",
        description="行情 API 地址",
    )
    broker_timeout: float = Field(default=10.0, gt=0, le=60, description="券商请求超时（秒）")

    # ==================== OpenRouter API（重新评分）====================
    openrouter_api_key: str = Field(default="", description="OpenRouter API Key")
    openrouter_model: str = Field(
        default="anthropic/claude-3.5-sonnet",
        description="OpenRouter 模型名称",
    )
    openrouter_timeout: int = Field(default=30, description="LLM 调用超时（秒）")

    # ==================== 自动开仓 ====================
    auto_entry_enabled: bool = Field(default=False, description="是否启用自动开仓")
    auto_entry_paper_only: bool = Field(default=True, description="只允许在模拟盘自动开仓")
    auto_entry_token: str = Field(default="", description="自动调用方共享密钥")
    auto_entry_selection_policy: SelectionPolicy = Field(
        default=SelectionPolicy.NEWEST_ELIGIBLE,
        description="同一标的候选选取策略（仅用于诊断采样，下单始终取最新合格）",
    )
    auto_entry_max_open: int = Field(default=3, ge=0, le=50, description="最大持仓数")
    auto_entry_max_per_day: int = Field(default=5, ge=0, le=100, description="每日最大开仓次数")
    auto_entry_max_age_min: float = Field(
        default=15.0,
        gt=0,
        le=24 * 60,
        description="候选最大存活时间（分钟），超过即过期",
    )
    auto_entry_rescore_after_min: float = Field(
        default=10.0,
        gt=0,
        le=24 * 60,
        description="超过该时间（分钟）需要重新评分",
    )
    auto_entry_rescore_enabled: bool = Field(default=True, description="是否允许重新评分")
    auto_entry_block_carryover: bool = Field(default=True, description="禁止跨交易日候选")
    auto_entry_max_consecutive_failures: int = Field(
        default=3,
        ge=1,
        le=20,
        description="连续执行失败停机阈值",
    )
    auto_entry_cooldown_after_loss_min: float = Field(
        default=20.0,
        ge=0,
        description="亏损后冷却时间（分钟）",
    )
    auto_entry_ticker_cooldown_min: float = Field(
        default=30.0,
        ge=0,
        description="同一标的再次开仓冷却时间（分钟）",
    )
    auto_entry_deadline_sec: float = Field(
        default=25.0,
        gt=0,
        le=600,
        description="单次运行时间上限（秒）",
    )
    auto_entry_base_risk_dollars: float = Field(
        default=100.0,
        gt=0,
        description="单笔基础风险金额（美元）",
    )
    auto_entry_allowed_tiers: str = Field(default="A,B,C", description="允许自动开仓的评级")
    auto_entry_tier_a_min: float = Field(default=8.5, description="A 级最低分")
    auto_entry_tier_b_min: float = Field(default=7.5, description="B 级最低分")
    auto_entry_tier_c_min: float = Field(default=6.5, description="C 级最低分")
    auto_entry_fallback_rr: float = Field(
        default=2.0,
        gt=0,
        le=10,
        description="候选缺少止盈价时使用的盈亏比",
    )

    # ==================== 持仓管理 ====================
    auto_manage_enabled: bool = Field(default=False, description="是否启用止损管理")
    auto_manage_trail_enabled: bool = Field(default=True, description="是否启用移动止损")
    auto_manage_trail_pct: float = Field(
        default=0.005,
        gt=0,
        le=0.2,
        description="移动止损距离（价格百分比）",
    )
    auto_manage_max_per_run: int = Field(default=50, ge=1, le=500, description="单次最多管理持仓数")
    auto_manage_cut_loss_enabled: bool = Field(default=False, description="是否启用 R 止损平仓")
    auto_manage_cut_loss_r: float = Field(default=-1.0, le=0, description="R 止损阈值")

    # ==================== 并发与状态 ====================
    run_lock_ttl_sec: int = Field(default=120, ge=5, le=3600, description="运行锁过期时间（秒）")
    guardrail_retention_days: int = Field(default=3, ge=1, le=60, description="护栏状态保留天数")

    # ==================== 日志配置 ====================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="日志级别",
    )
    log_format: LogFormat = Field(
        default=LogFormat.CONSOLE,
        description="日志输出格式",
    )

    # ==================== 数据存储 ====================
    state_dir: Path = Field(
        default=Path("data/state"),
        description="交易记录、护栏状态与遥测存储目录",
    )

    @field_validator("state_dir", mode="before")
    @classmethod
    def parse_state_dir(cls, v: str | Path) -> Path:
        """将字符串转换为 Path 对象。"""
        return Path(v) if isinstance(v, str) else v

    def ensure_directories(self) -> None:
        """确保必要的目录存在。"""
        self.state_dir.mkdir(parents=True, exist_ok=True)

    @property
    def is_paper_mode(self) -> bool:
        """是否为模拟盘模式。"""
        return self.mode == RunMode.PAPER

    @property
    def is_live_mode(self) -> bool:
        """是否为实盘模式。"""
        return self.mode == RunMode.LIVE

    @property
    def allowed_tiers(self) -> list[str]:
        """解析允许的评级列表。"""
        tiers = [t.strip().upper() for t in self.auto_entry_allowed_tiers.split(",")]
        return [t for t in tiers if t in {"A", "B", "C"}]

    @property
    def rescore_available(self) -> bool:
        """是否具备重新评分条件。"""
        return self.auto_entry_rescore_enabled and bool(self.openrouter_api_key)

    def validate_for_live(self) -> list[str]:
        """验证实盘模式的必要配置，返回缺失项列表。"""
        missing = []
        if not self.alpaca_api_key:
            missing.append("ALPACA_API_KEY")
        if not self.alpaca_api_secret:
            missing.append("ALPACA_API_SECRET")
        return missing

    def validate_for_auto_entry(self) -> list[str]:
        """验证自动开仓的必要配置，返回缺失项列表。"""
        missing = []
        if not self.auto_entry_token:
            missing.append("AUTO_ENTRY_TOKEN")
        return missing


# 全局配置实例（延迟初始化）
_settings: Settings | None = None


def get_settings() -> Settings:
    """获取全局配置实例。"""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """重新加载配置。"""
    global _settings
    _settings = Settings()
    return _settings
