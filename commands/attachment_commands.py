# -*- coding: utf-8 -*-
"""flask attachments ... 命令行：定时清理与存储统计。"""

import json
import logging
import time

import click
from flask import current_app
from flask.cli import AppGroup
from redis.exceptions import RedisError

from repositories.attachment_repository import AttachmentRepository
from repositories.cleanup_lock_repository import CleanupLockRepository
from services.deletion_service import DeletionService

logger = logging.getLogger(__name__)

attachments_cli = AppGroup("attachments", help="附件存储维护命令")


def _run_once(dry_run: bool):
    cfg = current_app.config
    token = None
    if cfg["CLEANUP_LOCK_ENABLED"]:
        try:
            token = CleanupLockRepository.acquire(cfg["CLEANUP_LOCK_NAME"], cfg["CLEANUP_LOCK_TIMEOUT"])
        except RedisError as exc:
            raise click.ClickException(f"无法连接 Redis 获取清理锁: {exc}") from exc
        if token is None:
            logger.info("Another cleanup holds %s, skipping this run", cfg["CLEANUP_LOCK_NAME"])
            return None

    try:
        return DeletionService.cleanup(dry_run=dry_run)
    finally:
        if token is not None:
            try:
                CleanupLockRepository.release(cfg["CLEANUP_LOCK_NAME"], token)
            except RedisError:
                logger.warning("Failed to release cleanup lock %s", cfg["CLEANUP_LOCK_NAME"])


def _echo_report(report):
    if report is None:
        click.echo("清理任务正在其他进程中执行，本次跳过")
        return
    prefix = "[dry-run] " if report.dry_run else ""
    click.echo(
        f"{prefix}过期临时文件 {report.expired_temporary}，孤立临时文件 {report.orphaned_temporary}，"
        f"超过宽限期的已删除文件 {report.soft_deleted_expired}"
    )
    click.echo(f"{prefix}删除记录 {report.rows_removed}，保留记录 {report.rows_purged}，失败 {report.failed}")
    for action in report.actions if report.dry_run else []:
        click.echo(f"  #{action.attachment_id} {action.reason} {action.full_path}")
    for issue in report.issues:
        click.echo(f"  ! {issue}", err=True)


@attachments_cli.command("cleanup")
@click.option("--interval", type=int, default=0, help="每隔 N 秒执行一次；0 表示只执行一次")
@click.option("--dry-run", is_flag=True, help="只列出待清理文件，不删除")
def cleanup_command(interval, dry_run):
    """清理过期 / 孤立的临时文件以及超过宽限期的软删除文件。"""

    while True:
        _echo_report(_run_once(dry_run))
        if interval <= 0:
            return
        time.sleep(interval)


@attachments_cli.command("stats")
@click.option("--json", "as_json", is_flag=True, help="以 JSON 输出")
def stats_command(as_json):
    """输出存储统计。"""

    stats = AttachmentRepository.statistics()
    if as_json:
        click.echo(json.dumps(stats, ensure_ascii=False))
        return
    for key, value in stats.items():
        click.echo(f"{key}: {value}")
