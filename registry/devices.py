# device_bridge/registry/devices.py

import threading
import time
from dataclasses import dataclass
from typing import List, Optional

from common.errors import ConflictError, ValidationError


@dataclass(frozen=True)
class Device:
    username: str
    employee_id: str
    created_at: int    # epoch milliseconds

    def to_dict(self) -> dict:
        return {
            "username":   self.username,
            "employeeId": self.employee_id,
            "createdAt":  self.created_at,
        }


class DeviceRegistry:
    """
    In-memory table of registered devices.

    A device collides with an existing one when EITHER the employee id is
    equal OR the usernames are equal ignoring case. This is not a compound
    key: two usernames sharing one employee id collide, and so does one
    username registered under two employee ids.
    """
    def __init__(self):
        self._devices: List[Device] = []
        self._lock = threading.Lock()

    def find(self,
             username: Optional[str],
             employee_id: Optional[str]) -> Optional[Device]:
        """Return the first device matching by employee id or username."""
        wanted = (username or "").lower()
        for dev in self._devices:
            if dev.employee_id == employee_id or dev.username.lower() == wanted:
                return dev
        return None

    def register(self, username: str, employee_id: str) -> Device:
        username = _clean(username)
        employee_id = _clean(employee_id)
        if not username or not employee_id:
            raise ValidationError("username and employeeId are required")

        # the conflict check and the append must not interleave
        with self._lock:
            existing = self.find(username, employee_id)
            if existing is not None:
                raise ConflictError("Device already exists", existing=existing)
            dev = Device(username=username,
                         employee_id=employee_id,
                         created_at=int(time.time() * 1000))
            self._devices.append(dev)
        return dev

    def list(self) -> List[Device]:
        with self._lock:
            return list(self._devices)

    def __len__(self) -> int:
        return len(self._devices)


def _clean(value) -> str:
    if value is None:
        return ""
    # numeric employee ids are accepted as their decimal text
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    if not isinstance(value, str):
        raise ValidationError("username and employeeId must be strings")
    return value.strip()
