"""HTTP client holding one day's task list with optimistic reordering."""

import logging
from datetime import date
from typing import Any, Dict, List, Optional

import requests

from .reorder import rebalance_order, resolve_reorder

logger = logging.getLogger(__name__)


class TaskListClient:
    """Client for the task API.

    ``positions`` is the local ``{task_id: position}`` view of the loaded
    day. ``move`` updates it before the server confirms and puts the previous
    snapshot back if the confirmation fails.
    """

    def __init__(self, base_url: str, session: Optional[requests.Session] = None, timeout: float = 10.0):
        self.base_url = base_url.rstrip('/')
        self.session = session or requests.Session()
        self.timeout = timeout
        self.access_token: Optional[str] = None
        self.day: Optional[date] = None
        self.tasks: Dict[int, Dict[str, Any]] = {}
        self.positions: Dict[int, str] = {}

    def login(self, username: str, password: str) -> bool:
        """Login to the server and store the bearer token."""
        try:
            response = self.session.post(
                f"{self.base_url}/auth/token",
                json={"username": username, "password": password},
                timeout=self.timeout,
            )
        except requests.RequestException:
            logger.exception("login request failed")
            return False
        if response.status_code != 200:
            return False
        self.access_token = response.json().get('access_token')
        return bool(self.access_token)

    def _get_auth_headers(self) -> Dict[str, str]:
        if self.access_token:
            return {'Authorization': f'Bearer {self.access_token}'}
        return {}

    def load_day(self, day: date) -> List[Dict[str, Any]]:
        """Fetch one day's tasks and replace the local view."""
        response = self.session.get(
            f"{self.base_url}/tasks",
            params={'date': day.isoformat()},
            headers=self._get_auth_headers(),
            timeout=self.timeout,
        )
        response.raise_for_status()
        tasks = response.json().get('tasks', [])
        self.day = day
        self.tasks = {t['id']: t for t in tasks}
        self.positions = {t['id']: t['position'] for t in tasks}
        return tasks

    def ordered_ids(self) -> List[int]:
        return [tid for tid, _ in sorted(self.positions.items(), key=lambda p: (p[1], p[0]))]

    def _apply(self, positions: Dict[int, str]):
        self.positions = dict(positions)
        for tid, key in self.positions.items():
            if tid in self.tasks:
                self.tasks[tid]['position'] = key

    def move(self, task_id: int, new_index: int) -> bool:
        """Move ``task_id`` to ``new_index`` locally, then confirm with the server.

        Returns True when the server accepted the change. On any failure the
        local view is restored to what it was before the move.
        """
        snapshot = dict(self.positions)
        result = resolve_reorder(list(self.positions.items()), task_id, new_index)
        tentative = dict(snapshot)
        if result.needs_rebalance:
            tentative.update(rebalance_order(result.rebalance))
        else:
            if result.new_position == snapshot[task_id]:
                return True
            tentative[task_id] = result.new_position
        self._apply(tentative)

        try:
            if result.needs_rebalance:
                response = self.session.post(
                    f"{self.base_url}/tasks/rebalance",
                    json={'task_ids': result.rebalance},
                    headers=self._get_auth_headers(),
                    timeout=self.timeout,
                )
            else:
                response = self.session.patch(
                    f"{self.base_url}/tasks/{task_id}/position",
                    json={'position': result.new_position},
                    headers=self._get_auth_headers(),
                    timeout=self.timeout,
                )
            response.raise_for_status()
        except requests.RequestException:
            logger.warning("reorder of task %s failed; restoring %d local positions",
                           task_id, len(snapshot), exc_info=True)
            self._apply(snapshot)
            return False

        if result.needs_rebalance:
            confirmed = {p['task_id']: p['position'] for p in response.json().get('positions', [])}
            if confirmed:
                merged = dict(self.positions)
                merged.update(confirmed)
                self._apply(merged)
        return True
