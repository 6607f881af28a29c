"""CLI 入口模块 - Trade Autopilot 命令行接口。"""

import json
import sys
from typing import Any

import click

from trade_autopilot import __version__
from trade_autopilot.ai.openrouter_client import OpenRouterRescorer
from trade_autopilot.broker.alpaca import AlpacaBroker
from trade_autopilot.config import get_settings
from trade_autopilot.entry.guardrails import GuardrailStore
from trade_autopilot.entry.orchestrator import run_auto_entry
from trade_autopilot.journal.store import TelemetryJournal
from trade_autopilot.manage.engine import run_stop_manager
from trade_autopilot.session import et_date_for, parse_iso, utc_now
from trade_autopilot.store.trades import TradeStore
from trade_autopilot.utils.logging import get_logger, setup_logging


def _emit(payload: dict[str, Any]) -> None:
    """以 JSON 输出运行结果（stdout），日志走 stderr。"""
    click.echo(json.dumps(payload, ensure_ascii=True, indent=2, default=str))


@click.group(invoke_without_command=True)
@click.option("--version", "-v", is_flag=True, help="显示版本号")
@click.pass_context
def cli(ctx: click.Context, version: bool) -> None:
    """Trade Autopilot - 自动开仓准入控制与止损生命周期管理。

    由外部定时器周期触发，每次执行单次运行，不含内部调度循环。
    """
    if version:
        click.echo(f"trade-autopilot version {__version__}")
        return

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command()
@click.option(
    "--dry-run",
    is_flag=True,
    default=False,
    help="试运行模式，执行全部检查但不下单",
)
@click.option(
    "--token",
    envvar="AUTO_ENTRY_CALLER_TOKEN",
    default=None,
    help="调用方共享密钥",
)
def entry(dry_run: bool, token: str | None) -> None:
    """执行单次自动开仓。

    鉴权 → 配置检查 → 市场时钟 → 候选去重/合格性 → 组合限制 → 下单/记录
    """
    settings = get_settings()
    setup_logging(settings)
    logger = get_logger("trade_autopilot.main")

    # 确保目录存在
    settings.ensure_directories()

    logger.info("starting_auto_entry", mode=settings.mode.value, dry_run=dry_run)

    try:
        result = run_auto_entry(
            settings,
            broker=AlpacaBroker(settings),
            trade_store=TradeStore(settings.state_dir),
            guardrails=GuardrailStore(settings.state_dir, settings.guardrail_retention_days),
            journal=TelemetryJournal(settings.state_dir / "telemetry"),
            token=token,
            rescorer=OpenRouterRescorer(settings) if settings.rescore_available else None,
            dry_run=dry_run,
        )
    except KeyboardInterrupt:
        logger.info("run_interrupted", message="User interrupted")
        sys.exit(0)
    except Exception as e:  # noqa: BLE001 - top-level guard keeps exit codes meaningful.
        logger.exception("auto_entry_crashed", error=str(e))
        sys.exit(1)

    _emit(result.to_dict())
    logger.info(
        "auto_entry_completed",
        status=result.status,
        actions=len(result.actions),
        skips_by_reason=result.skips_by_reason,
    )
    if not result.ok:
        sys.exit(1)


@cli.command()
@click.option(
    "--force",
    is_flag=True,
    default=False,
    help="市场休市时也执行（用于维护）",
)
def manage(force: bool) -> None:
    """执行单次止损管理。

    补建缺失止损 → 按评级收紧 → 替换券商止损单
    """
    settings = get_settings()
    setup_logging(settings)
    logger = get_logger("trade_autopilot.main")
    settings.ensure_directories()

    # 验证配置
    missing = settings.validate_for_live()
    if missing:
        logger.error(
            "missing_required_config",
            missing_keys=missing,
            hint="请在 .env 文件中配置券商 API 密钥",
        )
        sys.exit(1)

    try:
        result = run_stop_manager(
            settings,
            broker=AlpacaBroker(settings),
            trade_store=TradeStore(settings.state_dir),
            journal=TelemetryJournal(settings.state_dir / "telemetry"),
            force=force,
        )
    except KeyboardInterrupt:
        logger.info("run_interrupted", message="User interrupted")
        sys.exit(0)
    except Exception as e:  # noqa: BLE001 - top-level guard keeps exit codes meaningful.
        logger.exception("auto_manage_crashed", error=str(e))
        sys.exit(1)

    _emit(result.to_dict())
    logger.info("auto_manage_completed", status=result.status, outcome=result.outcome)
    if not result.ok:
        sys.exit(1)


@cli.command()
def status() -> None:
    """显示系统状态、配置摘要与今日护栏状态。"""
    settings = get_settings()
    setup_logging(settings)
    settings.ensure_directories()

    today = et_date_for(utc_now())
    state = GuardrailStore(settings.state_dir, settings.guardrail_retention_days).load(today)
    telemetry = TelemetryJournal(settings.state_dir / "telemetry").summarize_day(today)

    click.echo("=" * 50)
    click.echo("Trade Autopilot - Status")
    click.echo("=" * 50)
    click.echo()

    # 运行模式
    mode_marker = "[PAPER]" if settings.is_paper_mode else "[LIVE]"
    mode_text = "Paper Trading" if settings.is_paper_mode else "Live Trading"
    click.echo(f"{mode_marker} Mode: {mode_text}")
    click.echo()

    # API 配置状态
    click.echo("[API Configuration]")
    broker_status = "[OK] Configured" if not settings.validate_for_live() else "[--] Not configured"
    openrouter_status = "[OK] Configured" if settings.openrouter_api_key else "[--] Not configured"
    click.echo(f"   Alpaca API: {broker_status}")
    click.echo(f"   Alpaca endpoint: {settings.alpaca_base_url}")
    click.echo(f"   OpenRouter API: {openrouter_status}")
    click.echo(f"   Rescore model: {settings.openrouter_model}")
    click.echo()

    # 自动开仓参数
    click.echo("[Auto Entry]")
    click.echo(f"   Enabled: {settings.auto_entry_enabled} (paper only: {settings.auto_entry_paper_only})")
    click.echo(f"   Sample selection policy: {settings.auto_entry_selection_policy.value}")
    click.echo(f"   Max open / per day: {settings.auto_entry_max_open} / {settings.auto_entry_max_per_day}")
    click.echo(
        f"   Max age / rescore after: {settings.auto_entry_max_age_min:g} / "
        f"{settings.auto_entry_rescore_after_min:g} min"
    )
    click.echo(f"   Allowed tiers: {','.join(settings.allowed_tiers)}")
    click.echo()

    # 止损管理参数
    click.echo("[Auto Manage]")
    click.echo(f"   Enabled: {settings.auto_manage_enabled}")
    click.echo(f"   Trailing: {settings.auto_manage_trail_enabled} ({settings.auto_manage_trail_pct:.2%})")
    cut_loss = f"R <= {settings.auto_manage_cut_loss_r:g}" if settings.auto_manage_cut_loss_enabled else "off"
    click.echo(f"   Cut loss: {cut_loss}")
    click.echo()

    # 今日护栏
    click.echo(f"[Guardrails {today}]")
    click.echo(f"   Entries today: {state.entries_today}")
    click.echo(
        f"   Consecutive failures: {state.consecutive_failures}"
        f" / {settings.auto_entry_max_consecutive_failures}"
    )
    click.echo(f"   Auto disabled: {state.auto_disabled_reason or 'no'}")
    click.echo(f"   Last loss: {state.last_loss_at or '-'}")
    click.echo(f"   Telemetry outcomes: {telemetry['outcomes'] or '-'}")
    click.echo()

    # 验证状态
    missing = settings.validate_for_auto_entry() + settings.validate_for_live()
    if missing:
        click.echo("[ERROR] Configuration incomplete, missing:")
        for key in missing:
            click.echo(f"   - {key}")
    else:
        click.echo("[OK] Configuration complete")

    click.echo()
    click.echo("=" * 50)


@cli.command("reset-guardrails")
@click.option("--failures", is_flag=True, default=False, help="清零连续失败计数")
@click.option("--entries", is_flag=True, default=False, help="清零今日开仓计数")
@click.option("--auto-disabled", is_flag=True, default=False, help="解除自动停机")
@click.option("--loss", is_flag=True, default=False, help="清除最近亏损时间")
@click.option("--date", "et_date", default=None, help="交易日（默认今天，美东时间）")
def reset_guardrails(
    failures: bool,
    entries: bool,
    auto_disabled: bool,
    loss: bool,
    et_date: str | None,
) -> None:
    """维护：重置护栏状态。未指定任何选项时全部重置。"""
    settings = get_settings()
    setup_logging(settings)
    settings.ensure_directories()

    if not any((failures, entries, auto_disabled, loss)):
        failures = entries = auto_disabled = loss = True

    day = et_date or et_date_for(utc_now())
    store = GuardrailStore(settings.state_dir, settings.guardrail_retention_days)
    try:
        state = store.reset(
            day,
            failures=failures,
            entries=entries,
            auto_disabled=auto_disabled,
            loss=loss,
        )
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--date") from e
    purged = store.purge_expired(day)
    _emit({"ok": True, "state": state.to_dict(), "purged": purged})


@cli.command("set-last-loss")
@click.option("--at", "at", default=None, help="亏损时间（ISO 8601，默认当前时间）")
@click.option("--date", "et_date", default=None, help="交易日（默认取亏损时间对应的美东日期）")
def set_last_loss(at: str | None, et_date: str | None) -> None:
    """维护：记录最近一次亏损时间，触发亏损后冷却。"""
    settings = get_settings()
    setup_logging(settings)
    settings.ensure_directories()

    moment = parse_iso(at) if at else utc_now()
    if moment is None:
        raise click.BadParameter(f"invalid timestamp: {at}", param_hint="--at")
    day = et_date or et_date_for(moment)
    store = GuardrailStore(settings.state_dir, settings.guardrail_retention_days)
    try:
        state = store.record_loss(day, moment.isoformat())
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--date") from e
    _emit({"ok": True, "state": state.to_dict()})


@cli.command()
def check() -> None:
    """检查系统依赖和配置。"""
    setup_logging()
    logger = get_logger("trade_autopilot.main")

    click.echo("Checking system dependencies...")
    click.echo()

    all_ok = True

    # 检查必要的包
    packages = [
        ("pydantic", "Configuration validation"),
        ("pydantic_settings", "Settings loading"),
        ("httpx", "HTTP client"),
        ("structlog", "Structured logging"),
        ("click", "CLI framework"),
        ("tenacity", "Retry mechanism"),
    ]

    for pkg_name, desc in packages:
        try:
            __import__(pkg_name)
            click.echo(f"  [OK] {pkg_name} - {desc}")
        except ImportError:
            click.echo(f"  [MISSING] {pkg_name} - {desc}")
            all_ok = False

    click.echo()

    # 检查配置文件
    from pathlib import Path

    env_file = Path(".env")
    if env_file.exists():
        click.echo("  [OK] .env configuration file exists")
    else:
        click.echo("  [WARN] .env file not found (using defaults)")

    click.echo()

    if all_ok:
        click.echo("[OK] All dependency checks passed")
    else:
        click.echo("[ERROR] Some dependencies missing. Run: pip install -e .")

    logger.info("dependency_check_completed", all_ok=all_ok)


# 支持 python -m trade_autopilot.main 调用
if __name__ == "__main__":
    cli()
