import json
from datetime import datetime, timezone
from typing import Dict, Any, List
from app.config import settings
from pathlib import Path


class AnalyticsLogger:
    """Logger for saving reverse tutoring analytics events to a JSONL file."""

    def __init__(self, log_dir: str = None):
        self.log_dir = Path(log_dir or settings.log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.log_file = self.log_dir / "analytics_events.jsonl"

    def log_event(
        self,
        event_type: str,
        session_id: str,
        properties: Dict[str, Any] = None
    ):
        """Append an analytics event to the JSONL file."""
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
            "session_id": session_id,
            "properties": properties or {}
        }

        # One event per line so the file can be tailed and streamed
        with open(self.log_file, "a", encoding="utf-8") as f:
            f.write(json.dumps(log_entry, ensure_ascii=False, default=str) + "\n")

    def get_events(
        self,
        event_type: str = None,
        session_id: str = None,
        limit: int = None
    ) -> List[Dict[str, Any]]:
        """Retrieve logged events, optionally filtered."""
        if not self.log_file.exists():
            return []

        events = []
        with open(self.log_file, "r", encoding="utf-8") as f:
            for line in f:
                if not line.strip():
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if event_type and entry.get("event_type") != event_type:
                    continue
                if session_id and entry.get("session_id") != session_id:
                    continue
                events.append(entry)

        # Sort by timestamp (newest first)
        events.sort(key=lambda x: x.get("timestamp", ""), reverse=True)

        if limit:
            events = events[:limit]

        return events
