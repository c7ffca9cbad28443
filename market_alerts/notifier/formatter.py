# market_alerts/notifier/formatter.py
import html
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import TypeVar

TELEGRAM_LIMIT = 4000

T = TypeVar("T")


def format_current_time(now: datetime | None = None) -> str:
    d = now or datetime.now(UTC)
    return d.strftime("%Y-%m-%d %H:%M:%S UTC")


def format_datetime(timestamp_ms: int) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000, UTC).strftime("%m-%d %H:%M:%S")


def escape(text: str) -> str:
    return html.escape(text, quote=False)


def truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 1] + "…"


def format_signed(value: float, digits: int = 2, suffix: str = "%") -> str:
    return f"{value:+.{digits}f}{suffix}"


def format_number(value: float) -> str:
    if abs(value) >= 1_000_000_000:
        return f"{value / 1_000_000_000:.2f}B"
    elif abs(value) >= 1_000_000:
        return f"{value / 1_000_000:.2f}M"
    elif abs(value) >= 1_000:
        return f"{value:,.2f}"
    else:
        return f"{value:g}"


def change_icon(change: float) -> str:
    if change > 0:
        return "📈"
    if change < 0:
        return "📉"
    return "➡️"


def build_header(title: str) -> str:
    return f"<b>{escape(title)}</b>\n⏰ {format_current_time()}\n\n"


def split_message(message: str, limit: int = TELEGRAM_LIMIT) -> list[str]:
    """按行切分超长消息，保证每段不超过 limit

    单行本身超过 limit 时按字符硬切。
    """
    if len(message) <= limit:
        return [message]

    parts: list[str] = []
    buffer = ""
    for line in message.split("\n"):
        while len(line) > limit:
            if buffer.strip():
                parts.append(buffer.rstrip())
            buffer = ""
            parts.append(line[:limit])
            line = line[limit:]
        if len(buffer) + len(line) + 1 > limit:
            if buffer.strip():
                parts.append(buffer.rstrip())
            buffer = ""
        buffer += line + "\n"
    if buffer.strip():
        parts.append(buffer.rstrip())
    return parts


def pack_entries(
    header: str, entries: Sequence[tuple[str, Sequence[T]]], limit: int = TELEGRAM_LIMIT
) -> list[tuple[str, list[T]]]:
    """把条目装进不超过 limit 的分段，并记录每段承载的条目

    entries 为 (文本, 对应条目) 对；超长的单个条目按 split_message 硬切，
    对应条目记在第一段上。
    """
    parts: list[tuple[str, list[T]]] = []
    buffer = header
    buffer_items: list[T] = []
    count = 0
    for text, items in entries:
        block = text.rstrip() + "\n\n"
        if count and len(buffer) + len(block) > limit:
            parts.append((buffer.rstrip(), buffer_items))
            buffer, buffer_items, count = "", [], 0
        buffer += block
        buffer_items.extend(items)
        count += 1
        if len(buffer) > limit:
            chunks = split_message(buffer.rstrip(), limit)
            parts.append((chunks[0], buffer_items))
            parts.extend((chunk, []) for chunk in chunks[1:])
            buffer, buffer_items, count = "", [], 0
    if buffer.strip():
        parts.append((buffer.rstrip(), buffer_items))
    return parts


def format_task_failure(title: str, error: str) -> str:
    return f"❌ {escape(title)}任务失败\n⏰ {format_current_time()}\n错误: {escape(error)}"
