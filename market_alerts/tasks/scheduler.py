# market_alerts/tasks/scheduler.py
import asyncio
import logging
from collections.abc import Iterable

from market_alerts.notifier.formatter import escape, format_current_time
from market_alerts.tasks.base import MonitorTask, RunStatus, TaskResult

logger = logging.getLogger(__name__)

STATUS_ICONS = {RunStatus.OK: "🟢", RunStatus.PARTIAL: "🟡", RunStatus.ERROR: "🔴"}


class TaskScheduler:
    """按名字调用任务；同一任务上一轮未结束时跳过本次调用"""

    def __init__(self, tasks: Iterable[MonitorTask]):
        self.tasks: dict[str, MonitorTask] = {t.name: t for t in tasks}
        self.last_results: dict[str, TaskResult] = {}
        self._locks: dict[str, asyncio.Lock] = {name: asyncio.Lock() for name in self.tasks}

    def __contains__(self, name: str) -> bool:
        return name in self.tasks

    async def invoke(self, name: str) -> TaskResult | None:
        task = self.tasks.get(name)
        if task is None:
            raise KeyError(f"Unknown task: {name}")

        lock = self._locks[name]
        if lock.locked():
            logger.warning(f"[{name}] previous run still in progress, skipped")
            return None

        async with lock:
            result = await task.run()
        self.last_results[name] = result
        logger.info(
            f"[{name}] {result.result.value} in {result.execution_time_ms}ms "
            f"(new={result.counts.new_alerts}, dup={result.counts.duplicates}, failed={result.counts.failed})"
        )
        return result

    def format_status(self) -> str:
        lines = ["🔧 <b>任务状态</b>", f"⏰ {format_current_time()}", ""]
        for name in self.tasks:
            result = self.last_results.get(name)
            if result is None:
                lines.append(f"⚪ {escape(name)}: 尚未运行")
                continue
            c = result.counts
            summary = f"新提醒 {c.new_alerts} / 重复 {c.duplicates} / 失败 {c.failed}"
            lines.append(f"{STATUS_ICONS[result.result]} {escape(name)}: {summary} ({result.execution_time_ms}ms)")
            if result.error:
                lines.append(f"   错误: {escape(result.error)}")
        return "\n".join(lines)
