"""
Moodle REST client: fetches forum discussions, posts and assignment
submissions for one classroom.

Calls are blocking ``requests`` round-trips run on a worker thread so the
batch orchestrator can await them.
"""

import asyncio
import logging
import threading
from typing import Any, Optional

import requests

from activity_insights.config import Settings

logger = logging.getLogger(__name__)


class LMSError(RuntimeError):
    """Raised when the LMS web service fails or returns an exception payload."""


def _flatten_params(params: dict[str, Any]) -> dict[str, Any]:
    """Expand list params the way Moodle expects them (key[0]=a, key[1]=b)."""
    flat: dict[str, Any] = {}
    for key, value in params.items():
        if isinstance(value, (list, tuple)):
            for i, item in enumerate(value):
                flat[f"{key}[{i}]"] = item
        else:
            flat[key] = value
    return flat


class MoodleClient:
    """Web-service client for one classroom."""

    def __init__(
        self,
        base_url: str,
        token: str,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url
        self.token = token
        self.timeout = timeout
        self._shared_session = session
        # requests.Session is not thread-safe; calls run on to_thread workers
        self._local = threading.local()
        self._sessions: list[requests.Session] = []
        self._sessions_lock = threading.Lock()

    def _session_for_thread(self) -> requests.Session:
        if self._shared_session is not None:
            return self._shared_session
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            self._local.session = session
            with self._sessions_lock:
                self._sessions.append(session)
        return session

    def _call(self, wsfunction: str, **params: Any) -> Any:
        if not self.base_url or not self.token:
            raise LMSError("LMS endpoint is not configured (base_url/token missing)")

        query = {
            "wstoken": self.token,
            "wsfunction": wsfunction,
            "moodlewsrestformat": "json",
            **_flatten_params(params),
        }
        logger.debug("Calling LMS function %s", wsfunction)
        try:
            response = self._session_for_thread().get(
                self.base_url,
                params=query,
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            raise LMSError(f"{wsfunction} failed: {e}") from e

        if isinstance(data, dict) and data.get("exception"):
            raise LMSError(f"{wsfunction} failed: {data.get('message') or data['exception']}")
        return data

    async def call(self, wsfunction: str, **params: Any) -> Any:
        return await asyncio.to_thread(self._call, wsfunction, **params)

    async def get_forum_discussions(self, forum_id: int) -> list[dict]:
        data = await self.call("mod_forum_get_forum_discussions", forumid=forum_id)
        return data.get("discussions", []) if isinstance(data, dict) else []

    async def get_discussion_posts(self, discussion_id: int) -> list[dict]:
        data = await self.call("mod_forum_get_discussion_posts", discussionid=discussion_id)
        return data.get("posts", []) if isinstance(data, dict) else []

    async def get_assignment_submissions(self, assignment_id: int) -> list[dict]:
        data = await self.call("mod_assign_get_submissions", assignmentids=[assignment_id])
        if not isinstance(data, dict):
            return []
        for assignment in data.get("assignments", []):
            if assignment.get("assignmentid") == assignment_id:
                return assignment.get("submissions", [])
        return []

    async def test_connection(self) -> bool:
        try:
            info = await self.call("core_webservice_get_site_info")
        except LMSError as e:
            logger.warning("LMS connection test failed for %s: %s", self.base_url, e)
            return False
        return bool(isinstance(info, dict) and info.get("sitename"))

    def close(self) -> None:
        if self._shared_session is not None:
            self._shared_session.close()
        with self._sessions_lock:
            sessions, self._sessions = self._sessions, []
        for session in sessions:
            session.close()


def build_lms_clients(settings: Settings) -> dict[str, MoodleClient]:
    """One client per configured classroom id."""
    return {
        classroom_id: MoodleClient(
            base_url=endpoint.base_url,
            token=endpoint.token,
            timeout=settings.LMS_REQUEST_TIMEOUT,
        )
        for classroom_id, endpoint in settings.LMS_CLASSROOMS.items()
    }
