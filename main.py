#!/usr/bin/env python3
"""Equipment Alert Monitor - CLI Entry Point."""
import sys
import time
from datetime import timedelta
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent))

import click
from rich.console import Console
from rich.table import Table

from __version__ import __version__

console = Console()

_LEVEL_STYLES = {"CRITICAL": "bold white on red", "WARNING": "bold yellow", "INFO": "bold blue"}
_STATUS_STYLES = {
    "ACTIVE": "red", "ACKNOWLEDGED": "yellow", "RESOLVED": "green",
    "SUPPRESSED": "dim", "FALSE_POSITIVE": "cyan",
}


def _resolve_path(path):
    """Relative paths resolve against the working directory, then the project root."""
    p = Path(path)
    if p.is_absolute() or p.exists():
        return p
    return Path(__file__).parent / p


def _init_components(config_path=None, verbose=False):
    """Lazy initialization of all components."""
    from utils.logger import setup_logging
    from config import load_config
    from models.database import Database
    from models.enums import NotificationMethod
    from alerts.rules_manager import RulesManager
    from alerts.engine import RuleEngine
    from alerts.manager import AlertManager
    from alerts.dispatcher import NotificationDispatcher
    from alerts.channels import EmailChannel, SmsChannel, RealtimeChannel
    from notifications.realtime import RealtimePushChannel
    from monitor.analysis_client import AnalysisClient
    from monitor.reporting import FileReportSink
    from monitor.scheduler import AlertScheduler

    config = load_config(config_path)
    log_cfg = config.get("logging", {})
    setup_logging("DEBUG" if verbose else log_cfg.get("level", "INFO"), log_cfg.get("file"))

    db = Database(config["database"]["path"])
    db.connect()

    rules = RulesManager(_resolve_path(config["alerts"]["rules_path"]))

    realtime = None
    if config["realtime"].get("enabled", True):
        realtime = RealtimePushChannel(queue_size=config["realtime"].get("queue_size", 100))

    notify_cfg = config["notifications"]
    channels = {}
    if config["email"].get("enabled"):
        from notifications.email_sender import EmailSender
        channels[NotificationMethod.EMAIL] = EmailChannel(
            EmailSender(config), notify_cfg.get("default_email_recipients"))
    if config["sms"].get("enabled"):
        from notifications.sms_gateway import SmsGateway
        channels[NotificationMethod.SMS] = SmsChannel(
            SmsGateway(config), notify_cfg.get("default_sms_recipients"))
    if realtime is not None:
        channels[NotificationMethod.WEBSOCKET] = RealtimeChannel(realtime)

    dispatcher = NotificationDispatcher(db, channels, config)
    manager = AlertManager(db, RuleEngine(), dispatcher, realtime, config)
    manager.sync_rules(rules.get_all_rules())

    analysis = AnalysisClient(config)
    scheduler = AlertScheduler(
        manager, dispatcher, analysis, config,
        realtime=realtime,
        report_sink=FileReportSink(config["reporting"]["path"]),
    )

    return {
        "config": config, "db": db, "rules": rules, "manager": manager,
        "dispatcher": dispatcher, "realtime": realtime, "analysis": analysis,
        "scheduler": scheduler,
    }


@click.group()
@click.option("--config", "config_path", default=None, help="Path to config YAML")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.version_option(__version__, prog_name="alertmon")
@click.pass_context
def cli(ctx, config_path, verbose):
    """Equipment Alert Monitor - rule evaluation, alert lifecycle & notifications."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["verbose"] = verbose


def _get_components(ctx):
    obj = ctx.find_root().obj
    if "_components" not in obj:
        try:
            obj["_components"] = _init_components(obj.get("config_path"), obj.get("verbose"))
        except ValueError as e:
            console.print(f"[red]Configuration error:[/red] {e}")
            ctx.exit(1)
    return obj["_components"]


def _alerts_table(records, title):
    from utils.formatters import format_timestamp, format_duration, format_confidence, format_value

    table = Table(title=title, show_header=True)
    table.add_column("Alert ID", style="dim", no_wrap=True)
    table.add_column("Device", no_wrap=True)
    table.add_column("Rule")
    table.add_column("Level")
    table.add_column("Status")
    table.add_column("Value", justify="right")
    table.add_column("Threshold", justify="right")
    table.add_column("Conf.", justify="right")
    table.add_column("Raised")
    table.add_column("Open for", justify="right")
    table.add_column("Notify")

    for r in records:
        level = r.alert_level.value
        status = r.status.value
        table.add_row(
            r.alert_id, r.device_id, r.rule_name,
            f"[{_LEVEL_STYLES.get(level, '')}]{level}[/]",
            f"[{_STATUS_STYLES.get(status, '')}]{status}[/]",
            format_value(r.triggered_value), format_value(r.threshold_value),
            format_confidence(r.confidence_score), format_timestamp(r.alert_time),
            format_duration(r.duration_minutes()), r.notification_status.value,
        )
    return table


# ──────────────────────────────────────────────────────
# RUN
# ──────────────────────────────────────────────────────
@cli.command()
@click.pass_context
def run(ctx):
    """Start the scheduler and keep running until interrupted."""
    c = _get_components(ctx)
    scheduler = c["scheduler"]
    scheduler.start()
    console.print(f"[bold]Alert monitor running[/bold] for {len(scheduler.device_ids)} devices. Ctrl+C to stop.")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        console.print("\nStopping...")
    finally:
        scheduler.stop()
        c["dispatcher"].close()
        if c["realtime"] is not None:
            c["realtime"].close()
        c["db"].close()


# ──────────────────────────────────────────────────────
# ALERTS
# ──────────────────────────────────────────────────────
@cli.group()
def alerts():
    """Alert evaluation, listing and lifecycle."""
    pass


@alerts.command("check")
@click.option("--device", default=None, help="Only check this device")
@click.pass_context
def alerts_check(ctx, device):
    """Run a manual rule sweep now."""
    c = _get_components(ctx)
    results = c["scheduler"].trigger_alert_check(device_id=device, wait=True)
    created = [r for records in results.values() for r in records]
    console.print(f"Checked {len(results)} devices, {len(created)} alert records created.")
    if created:
        console.print(_alerts_table(created, "New Alert Records"))


@alerts.command("test")
@click.argument("device_id")
@click.option("--metric", "-m", "metrics", multiple=True, help="Use NAME=VALUE instead of fetching analysis")
@click.pass_context
def alerts_test(ctx, device_id, metrics):
    """Dry-run every rule for a device without creating alerts."""
    from alerts.errors import UpstreamUnavailable
    from models.metrics import MetricSnapshot

    c = _get_components(ctx)
    if metrics:
        values = {}
        for item in metrics:
            name, sep, value = item.partition("=")
            if not sep:
                console.print(f"[red]Invalid metric {item!r}, expected NAME=VALUE[/red]")
                ctx.exit(2)
            values[name.strip()] = value.strip()
        snapshot = MetricSnapshot(device_id=device_id, metrics=values, source="cli")
    else:
        try:
            snapshot = c["analysis"].fetch_latest_snapshot(device_id)
        except UpstreamUnavailable as e:
            console.print(f"[red]Analysis provider unavailable:[/red] {e}")
            ctx.exit(1)
        if snapshot is None:
            console.print(f"[yellow]No analysis available for {device_id}[/yellow]")
            return

    rules = [r for r in c["db"].get_all_rules() if r.matches_device(device_id)]
    results = c["manager"].engine.test_rules(rules, snapshot)

    table = Table(title=f"Rule Test - {device_id}", show_header=True)
    table.add_column("Rule")
    table.add_column("Type")
    table.add_column("Level")
    table.add_column("Current", justify="right")
    table.add_column("Threshold", justify="right")
    table.add_column("Would Fire")
    table.add_column("Note")
    for r in results:
        fire_str = "[green]YES[/green]" if r["would_fire"] else "[dim]no[/dim]"
        val = f"{r['value']:.4g}" if r["value"] is not None else "N/A"
        thr = f"{r['threshold']:.4g}" if r["threshold"] is not None else "-"
        note = r["skipped"] or ("" if r["active"] else "inactive")
        if r["would_fire"] and r["consecutive_required"] > 1:
            note = f"needs {r['consecutive_required']} in a row"
        table.add_row(r["name"], r["type"], r["level"], val, thr, fire_str, note)
    console.print(table)


@alerts.command("list")
@click.option("--device", default=None, help="Filter by device")
@click.option("--status", default=None,
              type=click.Choice(["ACTIVE", "ACKNOWLEDGED", "RESOLVED", "SUPPRESSED", "FALSE_POSITIVE"],
                                case_sensitive=False),
              help="Filter by status (default: open alerts)")
@click.option("--limit", default=50, type=int, help="Maximum rows")
@click.pass_context
def alerts_list(ctx, device, status, limit):
    """List open alerts, or alerts in a given status."""
    c = _get_components(ctx)
    manager = c["manager"]
    if status:
        records = manager.get_alerts(device_id=device, status=status.upper(), limit=limit)
        title = f"{status.upper()} Alerts"
    else:
        records = manager.get_active_alerts(device_id=device)[:limit]
        title = "Open Alerts"
    if not records:
        console.print("[dim]No alerts.[/dim]")
        return
    console.print(_alerts_table(records, title))


def _lifecycle(ctx, op, alert_id, by, note, verb):
    from alerts.errors import NotFoundError, InvalidTransitionError

    c = _get_components(ctx)
    try:
        record = getattr(c["manager"], op)(alert_id, by, note)
    except NotFoundError as e:
        console.print(f"[red]Error:[/red] {e}")
        ctx.exit(1)
    except InvalidTransitionError as e:
        console.print(f"[red]Error:[/red] {e}")
        ctx.exit(1)
    console.print(f"[green]✓[/green] Alert {record.alert_id} {verb} by {by} ({record.status.value})")


@alerts.command("ack")
@click.argument("alert_id")
@click.option("--by", required=True, help="Who is acknowledging")
@click.option("--note", default=None, help="Confirmation note")
@click.pass_context
def alerts_ack(ctx, alert_id, by, note):
    """Acknowledge an active alert."""
    _lifecycle(ctx, "acknowledge", alert_id, by, note, "acknowledged")


@alerts.command("resolve")
@click.argument("alert_id")
@click.option("--by", required=True, help="Who resolved it")
@click.option("--note", default=None, help="Resolution note")
@click.pass_context
def alerts_resolve(ctx, alert_id, by, note):
    """Resolve an open alert."""
    _lifecycle(ctx, "resolve", alert_id, by, note, "resolved")


@alerts.command("false-positive")
@click.argument("alert_id")
@click.option("--by", required=True, help="Who marked it")
@click.option("--note", default=None, help="Reason")
@click.pass_context
def alerts_false_positive(ctx, alert_id, by, note):
    """Mark an open alert as a false positive."""
    _lifecycle(ctx, "mark_false_positive", alert_id, by, note, "marked false positive")


@alerts.command("stats")
@click.option("--device", default=None, help="Filter by device")
@click.option("--days", default=7, type=int, help="Look-back window in days")
@click.pass_context
def alerts_stats(ctx, device, days):
    """Alert counts by status and level."""
    from models.alerts import utcnow

    c = _get_components(ctx)
    stats = c["manager"].get_statistics(device_id=device, since=utcnow() - timedelta(days=days))

    console.print(f"[bold]Alerts in the last {days} days[/bold]" + (f" for {device}" if device else ""))
    console.print(f"  Total: {stats['total_alerts']}  Open: {stats['active_count']}  "
                  f"Unconfirmed: {stats['unconfirmed_count']}  Suppressed: {stats['suppressed_count']}")

    table = Table(show_header=True)
    table.add_column("Status")
    table.add_column("Count", justify="right")
    for status, count in stats["status_counts"].items():
        table.add_row(f"[{_STATUS_STYLES.get(status, '')}]{status}[/]", str(count))
    console.print(table)

    table = Table(show_header=True)
    table.add_column("Level")
    table.add_column("Count", justify="right")
    for level, count in stats["level_counts"].items():
        table.add_row(f"[{_LEVEL_STYLES.get(level, '')}]{level}[/]", str(count))
    console.print(table)


@alerts.command("rules")
@click.pass_context
def alerts_rules(ctx):
    """Show configured alert rules."""
    from utils.formatters import time_ago

    c = _get_components(ctx)
    table = Table(title="Alert Rules", show_header=True)
    table.add_column("ID")
    table.add_column("Name")
    table.add_column("Type")
    table.add_column("Level")
    table.add_column("Device", no_wrap=True)
    table.add_column("Every", justify="right")
    table.add_column("N", justify="right")
    table.add_column("Suppress", justify="right")
    table.add_column("Channels")
    table.add_column("Last fired")
    table.add_column("Active")

    for r in c["db"].get_all_rules():
        table.add_row(
            r.rule_id, r.rule_name, r.rule_type.value,
            f"[{_LEVEL_STYLES.get(r.alert_level.value, '')}]{r.alert_level.value}[/]",
            r.device_id or "*", f"{r.check_interval_minutes}m", str(r.consecutive_trigger_count),
            f"{r.suppression_minutes}m", ",".join(m.value for m in r.notification_methods) or "-",
            time_ago(r.last_triggered_time) if r.last_triggered_time else "never",
            "✓" if r.is_active else "✗",
        )
    console.print(table)


# ──────────────────────────────────────────────────────
# NOTIFICATIONS
# ──────────────────────────────────────────────────────
@cli.group()
def notify():
    """Notification delivery commands."""
    pass


@notify.command("retry")
@click.pass_context
def notify_retry(ctx):
    """Retry failed notification channels now."""
    c = _get_components(ctx)
    result = c["dispatcher"].retry_failed_notifications()
    console.print(f"Retried {result['records']} alerts: {result['attempted']} channel attempts, "
                  f"{result['recovered']} recovered.")


@notify.command("stats")
@click.option("--days", default=7, type=int, help="Look-back window in days")
@click.pass_context
def notify_stats(ctx, days):
    """Per-channel delivery statistics."""
    from models.alerts import utcnow

    c = _get_components(ctx)
    stats = c["dispatcher"].get_statistics(since=utcnow() - timedelta(days=days))

    table = Table(title=f"Notification Channels (last {days} days)", show_header=True)
    table.add_column("Channel")
    table.add_column("Attempts", justify="right")
    table.add_column("Successes", justify="right")
    table.add_column("Failures", justify="right")
    for channel, s in sorted(stats["channels"].items()):
        table.add_row(channel, str(s["attempts"]), f"[green]{s['successes']}[/green]", f"[red]{s['failures']}[/red]")
    console.print(table)

    summary = ", ".join(f"{k}: {v}" for k, v in sorted(stats["status_counts"].items())) or "none"
    console.print(f"Alert notification status: {summary}")


# ──────────────────────────────────────────────────────
# MAINTENANCE
# ──────────────────────────────────────────────────────
@cli.command()
@click.option("--days", default=None, type=int, help="Retention in days (default from config)")
@click.pass_context
def cleanup(ctx, days):
    """Delete closed alert records older than the retention horizon."""
    c = _get_components(ctx)
    deleted = c["manager"].cleanup_expired(retention_days=days)
    console.print(f"Deleted {deleted} alert records.")


@cli.command()
@click.pass_context
def health(ctx):
    """Check database, analysis provider and notification channels."""
    c = _get_components(ctx)
    result = c["scheduler"].run_health_check()
    for name, ok in result["checks"].items():
        mark = "[green]✓[/green]" if ok else "[red]✗[/red]"
        console.print(f"  {mark} {name}")
    console.print(f"  Channels: {', '.join(result['channels']) or 'none'}")
    console.print(f"  Realtime subscribers: {result['subscribers']}")
    if not result["healthy"]:
        ctx.exit(1)


if __name__ == "__main__":
    cli()
