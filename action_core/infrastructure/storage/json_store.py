import json
import os
import threading
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List
from uuid import uuid4

from action_core.config.settings import settings
from action_core.domain.exceptions import BusinessError
from action_core.domain.models import HistoryEntry, UsageStatistic


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _atomic_write(path: Path, obj: Any) -> None:
    tmp_path = path.parent / f"{path.stem}.{uuid4().hex}.json.tmp"
    try:
        tmp_path.write_text(json.dumps(obj, ensure_ascii=False), encoding="utf-8")
        os.replace(tmp_path, path)
    except Exception as e:
        raise BusinessError(code="STORE_WRITE_ERROR", message=str(e))


class JsonHistoryStore:
    """history.jsonl：每次执行追加一行。"""

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._root.mkdir(parents=True, exist_ok=True)
        self._path = self._root / "history.jsonl"
        self._lock = threading.Lock()

    def add_history_entry(self, entry: HistoryEntry) -> None:
        payload = asdict(entry)
        payload["timestamp"] = _iso(entry.timestamp)
        try:
            line = json.dumps(payload, ensure_ascii=False)
            with self._lock, self._path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")
        except Exception as e:
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e))

    def list_history(self) -> List[HistoryEntry]:
        """按时间倒序返回，损坏的行直接跳过。"""
        items: List[HistoryEntry] = []
        if not self._path.exists():
            return items
        for line in self._path.read_text(encoding="utf-8").splitlines():
            try:
                items.append(self._to_entry(json.loads(line)))
            except Exception:
                continue
        items.sort(key=lambda e: e.timestamp, reverse=True)
        return items

    def clear_history(self) -> None:
        with self._lock:
            if self._path.exists():
                self._path.unlink()

    @staticmethod
    def _to_entry(data: Dict[str, Any]) -> HistoryEntry:
        return HistoryEntry(
            timestamp=datetime.fromisoformat(str(data["timestamp"]).replace("Z", "+00:00")),
            action_name=data.get("action_name") or "",
            provider_label=data.get("provider_label") or "",
            model_label=data.get("model_label") or "",
            input_text=data.get("input_text") or "",
            output_text=data.get("output_text") or "",
            prompt_tokens=int(data.get("prompt_tokens", 0)),
            completion_tokens=int(data.get("completion_tokens", 0)),
            latency_ms=float(data.get("latency_ms", 0.0)),
            tokens_per_second=float(data.get("tokens_per_second", 0.0)),
        )


class JsonUsageTracker:
    """按 UTC 自然月累计 token 用量，usage.json 中每个月一条记录。"""

    def __init__(self, root: str | Path | None = None, now: Callable[[], datetime] = _utcnow):
        self._root = Path(root or settings.storage_root).resolve()
        self._root.mkdir(parents=True, exist_ok=True)
        self._path = self._root / "usage.json"
        self._now = now
        self._lock = threading.Lock()
        self._current = self._get_or_create_current()

    def current_usage(self) -> UsageStatistic:
        with self._lock:
            self._roll_over()
            return UsageStatistic(**asdict(self._current))

    def add_usage(self, prompt_tokens: int, completion_tokens: int) -> None:
        with self._lock:
            self._roll_over()
            self._current.prompt_tokens += prompt_tokens
            self._current.completion_tokens += completion_tokens
            self._save()

    def reset_usage(self) -> None:
        with self._lock:
            self._current.prompt_tokens = 0
            self._current.completion_tokens = 0
            self._save()

    def all_months(self) -> List[UsageStatistic]:
        return [UsageStatistic(**item) for item in self._read()]

    def _roll_over(self) -> None:
        now = self._now()
        if (now.year, now.month) != (self._current.year, self._current.month):
            # 跨月：切换到新月份的记录
            self._current = self._get_or_create_current()

    def _get_or_create_current(self) -> UsageStatistic:
        now = self._now()
        for item in self._read():
            if item.get("year") == now.year and item.get("month") == now.month:
                return UsageStatistic(**item)
        return UsageStatistic(year=now.year, month=now.month)

    def _read(self) -> List[Dict[str, Any]]:
        if not self._path.exists():
            return []
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except Exception as e:
            raise BusinessError(code="STORE_READ_ERROR", message=str(e))
        return data if isinstance(data, list) else []

    def _save(self) -> None:
        items = [i for i in self._read() if (i.get("year"), i.get("month")) != (self._current.year, self._current.month)]
        items.append(asdict(self._current))
        items.sort(key=lambda i: (i["year"], i["month"]))
        _atomic_write(self._path, items)
