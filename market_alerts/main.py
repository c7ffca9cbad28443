# market_alerts/main.py
"""
行情告警服务入口

用法:
    uv run python -m market_alerts.main
    uv run python -m market_alerts.main --config config.yaml
    uv run python -m market_alerts.main --once funding:rate
"""

import argparse
import asyncio
import json
import logging
import signal
import time
from collections.abc import Sequence
from pathlib import Path

import aiohttp

from market_alerts.client.binance import BinanceClient
from market_alerts.client.bybit import BybitClient
from market_alerts.client.coingecko import CoinGeckoClient
from market_alerts.client.http import RetryOptions
from market_alerts.client.queue import RequestQueue
from market_alerts.config import Config, TaskConfig, load_config
from market_alerts.notifier.telegram import TelegramNotifier
from market_alerts.storage.kv import MemoryKeyValueStore, SQLiteKeyValueStore
from market_alerts.tasks.announcement import AnnouncementTask
from market_alerts.tasks.base import MonitorTask, TaskContext
from market_alerts.tasks.fluctuation import FluctuationTask
from market_alerts.tasks.funding_rate import FundingRateTask
from market_alerts.tasks.long_short_ratio import LongShortRatioTask
from market_alerts.tasks.market_cap_ratio import MarketCapRatioTask
from market_alerts.tasks.open_interest import OpenInterestTask
from market_alerts.tasks.scheduler import TaskScheduler

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


class MarketAlertService:
    def __init__(self, config: Config):
        self.config = config
        if config.storage.driver == "memory":
            self.storage: SQLiteKeyValueStore | MemoryKeyValueStore = MemoryKeyValueStore()
        else:
            self.storage = SQLiteKeyValueStore(config.storage.path)
        self.notifier = TelegramNotifier(
            config.telegram.bot_token,
            config.telegram.chat_id,
            channels=config.telegram.channels,
            message_limit=config.telegram.message_limit,
        )
        self.session: aiohttp.ClientSession | None = None
        self.scheduler: TaskScheduler | None = None
        self.running = False
        self.start_time = time.time()

    def _build_tasks(self, context: TaskContext) -> list[MonitorTask]:
        cfg = self.config.tasks
        entries: list[tuple[type[MonitorTask], TaskConfig]] = [
            (FundingRateTask, cfg.funding_rate),
            (LongShortRatioTask, cfg.long_short_ratio),
            (OpenInterestTask, cfg.open_interest),
            (FluctuationTask, cfg.fluctuation),
            (AnnouncementTask, cfg.announcement),
            (MarketCapRatioTask, cfg.market_cap_ratio),
        ]
        tasks = []
        for task_cls, settings in entries:
            # 每个任务独占一个请求队列，进程内只创建一次
            queue = RequestQueue(settings.queue.min_delay_ms, settings.queue.max_random_delay_ms)
            tasks.append(task_cls(context, settings, queue))
        return tasks

    async def init(self) -> None:
        if isinstance(self.storage, SQLiteKeyValueStore):
            # Ensure data directory exists
            Path(self.config.storage.path).parent.mkdir(parents=True, exist_ok=True)
        await self.storage.init()

        http = self.config.http
        retry: RetryOptions = http.retry.to_options()
        self.session = aiohttp.ClientSession(headers={"Content-Type": "application/json"})
        context = TaskContext(
            storage=self.storage,
            notifier=self.notifier,
            bybit=BybitClient(self.session, http.bybit_api_url, retry),
            binance=BinanceClient(self.session, http.binance_api_url, retry),
            coingecko=CoinGeckoClient(self.session, http.coingecko_api_url, RetryOptions(retries=1)),
            thresholds=self.config.thresholds,
            message_limit=self.config.telegram.message_limit,
        )
        tasks = self._build_tasks(context)
        for task in tasks:
            await task.seed_monitors()
        self.scheduler = TaskScheduler(tasks)

        # Setup Telegram callbacks
        self.notifier.on_status = self._on_status

    async def close(self) -> None:
        if self.session:
            await self.session.close()
            self.session = None
        await self.storage.close()

    def enabled_tasks(self) -> list[tuple[str, int]]:
        if self.scheduler is None:
            return []
        return [
            (name, task.settings.interval_seconds)
            for name, task in self.scheduler.tasks.items()
            if task.settings.enabled
        ]

    async def _on_status(self) -> str:
        uptime = time.time() - self.start_time
        days = int(uptime // 86400)
        hours = int((uptime % 86400) // 3600)
        minutes = int((uptime % 3600) // 60)
        status = self.scheduler.format_status() if self.scheduler else "尚未初始化"
        return f"{status}\n\n运行时间: {days}d {hours}h {minutes}m"

    async def _run_periodic(self, name: str, interval: int) -> None:
        assert self.scheduler is not None
        while self.running:
            try:
                await self.scheduler.invoke(name)
            except Exception as e:
                logger.error(f"[{name}] scheduler invoke failed: {e}")
            await asyncio.sleep(interval)

    async def run_once(self, name: str) -> dict:
        await self.init()
        try:
            assert self.scheduler is not None
            result = await self.scheduler.invoke(name)
            return result.to_dict() if result else {}
        finally:
            await self.close()

    async def run(self) -> None:
        await self.init()
        self.running = True

        # Start Telegram bot
        if self.config.telegram.polling:
            await self.notifier.start_polling()

        # Start background tasks
        tasks = [
            asyncio.create_task(self._run_periodic(name, interval))
            for name, interval in self.enabled_tasks()
        ]

        logger.info(f"Market alerts started with {len(tasks)} tasks")

        # Wait for shutdown signal
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)

        await stop_event.wait()

        # Cleanup
        self.running = False
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if self.config.telegram.polling:
            await self.notifier.stop_polling()
        await self.close()

        logger.info("Market alerts stopped")


def parse_args(args: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="行情信号去重告警服务")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("config.yaml"),
        help="配置文件路径 (默认: config.yaml)",
    )
    parser.add_argument(
        "--once",
        type=str,
        default=None,
        metavar="TASK",
        help="只运行一次指定任务并输出结果，如 funding:rate",
    )
    return parser.parse_args(args)


async def main(argv: Sequence[str] | None = None) -> None:
    args = parse_args(argv)
    config = load_config(args.config)
    logging.getLogger().setLevel(config.log_level.upper())

    service = MarketAlertService(config)
    if args.once:
        result = await service.run_once(args.once)
        print(json.dumps(result, ensure_ascii=False, indent=2))
        return
    await service.run()


def cli() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    cli()
