"""Quest events read from game client notification logs.

Relevant lines look like::

    2024-03-01 18:22:05.123|... Got notification | ChatMessageReceived | {"MessageType": 12, ...}

MessageType 10/11/12 mean started/failed/finished, and the quest id is the first
token of ``message.templateId``.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from enum import IntEnum
from typing import Dict, Iterable, List, Optional


logger = logging.getLogger(__name__)

_TIMESTAMP = re.compile(r"^(\d{4}-\d{2}-\d{2}\s+\d{2}:\d{2}:\d{2}\.\d{3})")
_JSON_BODY = re.compile(r"\{.*\}", re.DOTALL)


class QuestEventType(IntEnum):
    STARTED = 10
    FAILED = 11
    FINISHED = 12


@dataclass(frozen=True)
class QuestLogEvent:
    event_type: QuestEventType
    quest_id: str
    template_id: str
    timestamp: Optional[datetime]


@dataclass(frozen=True)
class QuestLogChange:
    entity_id: str
    completed: bool
    at: Optional[datetime]


def parse_log_line(line: str, *, log_timezone: tzinfo = timezone.utc) -> Optional[QuestLogEvent]:
    if "Got notification" not in line or "ChatMessageReceived" not in line:
        return None
    match = _JSON_BODY.search(line)
    if match is None:
        return None
    try:
        notification = json.loads(match.group(0))
    except json.JSONDecodeError:
        logger.debug("Notification body is not valid JSON", extra={"line": line[:120]})
        return None
    if not isinstance(notification, dict):
        return None

    try:
        event_type = QuestEventType(notification.get("MessageType"))
    except ValueError:
        return None

    message = notification.get("message")
    template_id = message.get("templateId") if isinstance(message, dict) else None
    if not template_id or not str(template_id).strip():
        return None
    template_id = str(template_id)

    timestamp = None
    stamp_match = _TIMESTAMP.match(line)
    if stamp_match:
        text = re.sub(r"\s+", " ", stamp_match.group(1))
        timestamp = datetime.strptime(text, "%Y-%m-%d %H:%M:%S.%f").replace(tzinfo=log_timezone)
        timestamp = timestamp.astimezone(timezone.utc)

    return QuestLogEvent(
        event_type=event_type,
        quest_id=template_id.split()[0],
        template_id=template_id,
        timestamp=timestamp,
    )


def parse_log_content(content: str, *, log_timezone: tzinfo = timezone.utc) -> List[QuestLogEvent]:
    events: List[QuestLogEvent] = []
    for line in content.splitlines():
        event = parse_log_line(line, log_timezone=log_timezone)
        if event is not None:
            events.append(event)
    return events


def latest_changes(events: Iterable[QuestLogEvent]) -> List[QuestLogChange]:
    """Reduce events to one progress change per quest, the latest event winning.

    Started events carry no progress change. Events without a timestamp keep log order.
    """
    latest: Dict[str, QuestLogEvent] = {}
    for event in events:
        if event.event_type == QuestEventType.STARTED:
            continue
        current = latest.get(event.quest_id)
        if (
            current is None
            or event.timestamp is None
            or current.timestamp is None
            or event.timestamp >= current.timestamp
        ):
            latest[event.quest_id] = event
    return [
        QuestLogChange(
            entity_id=event.quest_id,
            completed=event.event_type == QuestEventType.FINISHED,
            at=event.timestamp,
        )
        for event in latest.values()
    ]
