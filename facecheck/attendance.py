"""
Attendance Module

Local cooldown tracking so a member standing in front of the camera is logged
once, and the logger that writes attendance to the backend.
"""

import logging
import time
from typing import Any, Dict, Optional

from .errors import RemoteBackendError
from .kv_store import KeyValueStore
from .models import Member

logger = logging.getLogger(__name__)

COOLDOWN_KEY = 'attendance_cooldown_tracker'


def _format_duration(seconds: float) -> str:
    hours, remainder = divmod(int(seconds), 3600)
    minutes = remainder // 60
    return f"{hours}h {minutes}m" if hours else f"{minutes}m"


class AttendanceCooldown:
    """Per-member attendance cooldown persisted in a KeyValueStore."""

    def __init__(self, kv_store: KeyValueStore, cooldown_hours: float = 8):
        self.kv_store = kv_store
        self.cooldown_hours = cooldown_hours
        self.cooldown_seconds = cooldown_hours * 60 * 60

    def _records(self) -> Dict[str, Any]:
        records = self.kv_store.get(COOLDOWN_KEY, {})
        return dict(records) if isinstance(records, dict) else {}

    def last_attendance(self, member_id: str) -> Optional[Dict[str, Any]]:
        return self._records().get(member_id)

    def _elapsed(self, member_id: str) -> Optional[float]:
        record = self.last_attendance(member_id)
        if record is None:
            return None
        return time.time() - float(record.get('last_attendance_time', 0))

    def can_log(self, member_id: str) -> bool:
        """True when the member has no record or the cooldown has passed."""
        elapsed = self._elapsed(member_id)
        if elapsed is None:
            return True
        if elapsed >= self.cooldown_seconds:
            logger.debug(f"Cooldown expired for {member_id} ({elapsed / 3600:.1f}h ago)")
            return True
        return False

    def remaining_hours(self, member_id: str) -> float:
        elapsed = self._elapsed(member_id)
        if elapsed is None:
            return 0.0
        return max(0.0, (self.cooldown_seconds - elapsed) / 3600.0)

    def cooldown_message(self, member_id: str) -> str:
        """Readable cooldown status, empty when attendance can be logged."""
        elapsed = self._elapsed(member_id)
        if elapsed is None or elapsed >= self.cooldown_seconds:
            return ''
        return (f"Attendance already logged {_format_duration(elapsed)} ago. "
                f"Next attendance in {_format_duration(self.cooldown_seconds - elapsed)}")

    def record(self, member_id: str, name: str, confidence: float):
        """Record an attendance now and drop records whose cooldown has passed."""
        now = time.time()
        records = self._records()
        records[member_id] = {
            'member_id': member_id,
            'member_name': name,
            'last_attendance_time': now,
            'confidence': float(confidence)
        }

        expired = [key for key, record in records.items()
                   if now - float(record.get('last_attendance_time', 0)) > self.cooldown_seconds]
        for key in expired:
            del records[key]
        if expired:
            logger.debug(f"Cleaned up {len(expired)} expired attendance records")

        self.kv_store.set(COOLDOWN_KEY, records)
        logger.info(f"Recorded attendance for {name}")

    def clear(self):
        self.kv_store.remove(COOLDOWN_KEY)
        logger.info("All attendance cooldown records cleared")

    def stats(self) -> Dict[str, Any]:
        records = self._records()
        now = time.time()
        active = [record for record in records.values()
                  if now - float(record.get('last_attendance_time', 0)) < self.cooldown_seconds]
        return {
            'total_records': len(records),
            'active_records': len(active),
            'cooldown_hours': self.cooldown_hours
        }


class AttendanceLogger:
    """Writes attendance for matched members, honouring the cooldown."""

    def __init__(self, repository, cooldown: AttendanceCooldown):
        self.repository = repository
        self.cooldown = cooldown

    def log(self, member: Member, confidence: float) -> Dict[str, Any]:
        """
        Log attendance for a member.

        Returns:
            Dictionary with 'logged', 'reason' ('cooldown',
            'already_attended_today' or 'error' when not logged), 'message'
            and the created 'log'
        """
        result = {'logged': False, 'reason': None, 'message': '', 'log': None}

        if not self.cooldown.can_log(member.id):
            result['reason'] = 'cooldown'
            result['message'] = self.cooldown.cooldown_message(member.id)
            return result

        if self.repository is None:
            # Offline: the local cooldown is the only record
            self.cooldown.record(member.id, member.name, confidence)
            result['logged'] = True
            return result

        try:
            log = self.repository.add_attendance_log(member.id, confidence)
        except RemoteBackendError as e:
            logger.error(f"Failed to log attendance for {member.name}: {e}")
            result['reason'] = 'error'
            result['message'] = str(e)
            return result

        # Either way the member is present today; start the local cooldown
        self.cooldown.record(member.id, member.name, confidence)

        if log is None:
            result['reason'] = 'already_attended_today'
            result['message'] = f"{member.name} already attended today"
            return result

        result['logged'] = True
        result['log'] = log
        result['message'] = f"Attendance logged for {member.name}"
        return result
