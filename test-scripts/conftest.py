import sys
from pathlib import Path
from typing import Dict, List, Optional

import pytest

# Add root to sys.path
root = Path(__file__).parent.parent
sys.path.insert(0, str(root))

from cogs.stream_alerts.errors import StreamerNotFound  # noqa: E402
from cogs.twitch.constants import STREAM_ONLINE  # noqa: E402
from cogs.twitch.models import CreateFailure, RemoteSubscription  # noqa: E402
from cogs.twitch.reconciler import SubscriptionReconciler  # noqa: E402
from cogs.twitch.token_manager import TwitchTokenManager  # noqa: E402


def make_sub(sub_id: str, broadcaster_id: str, session_id: str, status: str = "enabled") -> RemoteSubscription:
    return RemoteSubscription.model_validate(
        {
            "id": sub_id,
            "status": status,
            "type": STREAM_ONLINE,
            "version": "1",
            "condition": {"broadcaster_user_id": broadcaster_id},
            "transport": {"method": "websocket", "session_id": session_id},
            "created_at": "2024-01-01T00:00:00Z",
            "cost": 1,
        }
    )


class FakeTwitchAPI:
    """In-memory Helix: users by login and a remote subscription table."""

    def __init__(self, users: Optional[Dict[str, str]] = None):
        self.users = {k.lower(): v for k, v in (users or {}).items()}
        self.remote: Dict[str, RemoteSubscription] = {}
        self.created: List[str] = []
        self.deleted: List[str] = []
        self.calls: List[str] = []
        self.fail_create = False
        # Simuliert eine fremde Erstellung zwischen List und Create (409)
        self.conflict_with: Optional[RemoteSubscription] = None
        self._next = 1

    async def resolve_user_id(self, login: str) -> str:
        self.calls.append("resolve")
        key = login.strip().lower()
        if key not in self.users:
            raise StreamerNotFound(login)
        return self.users[key]

    async def list_subscriptions(self, sub_type: Optional[str] = None) -> List[RemoteSubscription]:
        self.calls.append("list")
        return [s for s in self.remote.values() if not sub_type or s.type == sub_type]

    async def create_subscription(self, broadcaster_id: str, session_id: str, sub_type: str = STREAM_ONLINE):
        self.calls.append("create")
        if self.conflict_with is not None:
            self.remote[self.conflict_with.id] = self.conflict_with
            self.conflict_with = None
            return CreateFailure.CONFLICT
        if self.fail_create:
            return CreateFailure.FAILED
        sub = make_sub(f"sub-{self._next}", broadcaster_id, session_id)
        self._next += 1
        self.remote[sub.id] = sub
        self.created.append(sub.id)
        return sub

    async def delete_subscription(self, subscription_id: str) -> bool:
        self.calls.append("delete")
        self.deleted.append(subscription_id)
        return self.remote.pop(subscription_id, None) is not None


class FakeSession:
    def __init__(self, session_id: Optional[str] = "S1"):
        self.session_id = session_id

    async def wait_until_welcomed(self, timeout: Optional[float] = None) -> bool:
        return bool(self.session_id)


@pytest.fixture
def fake_api():
    return FakeTwitchAPI({"streamerX": "123", "other": "456"})


@pytest.fixture
def fake_session():
    return FakeSession("S1")


@pytest.fixture
def tokens():
    return TwitchTokenManager("cid", "secret", "http://localhost:3000/twitch")


@pytest.fixture
def reconciler(fake_api, fake_session, tokens):
    return SubscriptionReconciler(fake_api, fake_session, tokens)
