"""
Test the HTTP surface: webhooks, notification endpoints and ledger views.
"""

import base64
import json

import httpx
import pytest

from tipflow.api import dependencies
from tipflow.api.main import create_app
from tipflow.core.config import settings
from tipflow.scheduler.settlement_scheduler import SettlementScheduler
from tipflow.services.event_processor import EventProcessor
from tipflow.utils.validation import compute_webhook_signature

from conftest import ACTOR, ACTOR_FID, reaction_payload, reply_payload


pytestmark = pytest.mark.usefixtures("database")

NOTIFY_URL = "https://api.farcaster.xyz/v1/frame-notifications"


def b64url(value: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(value).encode()).decode().rstrip("=")


@pytest.fixture
def processor(ingestor):
    return EventProcessor(ingestor=ingestor, workers=1)


@pytest.fixture
async def client(ingestor, processor, dispatcher, resolver):
    app = create_app()
    app.dependency_overrides[dependencies.get_ingestor] = lambda: ingestor
    app.dependency_overrides[dependencies.get_processor] = lambda: processor
    app.dependency_overrides[dependencies.get_dispatcher] = lambda: dispatcher
    app.dependency_overrides[dependencies.get_resolver] = lambda: resolver
    app.dependency_overrides[dependencies.get_scheduler] = lambda: SettlementScheduler(enabled=False)

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


class TestWebhooks:

    @pytest.mark.asyncio
    async def test_engagement_is_queued(self, client, processor):
        response = await client.post("/webhook/neynar", json=reaction_payload())

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["queued"] is True
        assert body["eventId"] == f"reaction:like:{ACTOR_FID}:0xcafe01"
        assert processor.queue.qsize() == 1

    @pytest.mark.asyncio
    async def test_unsupported_event_is_acknowledged(self, client, processor):
        response = await client.post("/webhook/neynar", json=reply_payload(parent_hash=None))

        assert response.status_code == 200
        body = response.json()
        assert body["processed"] is False
        assert body["message"] == "cast is not a reply"
        assert processor.queue.qsize() == 0

    @pytest.mark.asyncio
    async def test_malformed_body(self, client):
        response = await client.post(
            "/webhook/farcaster",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 200
        assert response.json()["success"] is False
        assert response.json()["error"] == "Malformed webhook body"

    @pytest.mark.asyncio
    async def test_invalid_engagement_payload(self, client):
        payload = reaction_payload()
        del payload["data"]["cast"]["hash"]

        response = await client.post("/webhook/neynar", json=payload)

        assert response.json()["success"] is False
        assert "cast.hash" in response.json()["error"]

    @pytest.mark.asyncio
    async def test_signature_required_when_secret_configured(self, client, monkeypatch):
        monkeypatch.setattr(settings, "webhook_secret", "s3cret")
        body = json.dumps(reaction_payload()).encode()

        response = await client.post(
            "/webhook/neynar", content=body, headers={"Content-Type": "application/json"}
        )
        assert response.status_code == 401
        assert response.json()["error_code"] == "AUTHENTICATION_ERROR"

        response = await client.post(
            "/webhook/neynar",
            content=body,
            headers={
                "Content-Type": "application/json",
                "X-Neynar-Signature": compute_webhook_signature("s3cret", body),
            },
        )
        assert response.status_code == 200
        assert response.json()["queued"] is True

    @pytest.mark.asyncio
    async def test_signed_lifecycle_event_registers_token(self, client):
        envelope = {
            "header": b64url({"fid": ACTOR_FID, "type": "custody", "key": "0xkey"}),
            "payload": b64url({
                "event": "miniapp_added",
                "notificationDetails": {"token": "tok-1", "url": NOTIFY_URL},
            }),
            "signature": "c2ln",
        }

        response = await client.post("/webhook/farcaster", json=envelope)

        assert response.json() == {
            "success": True,
            "queued": False,
            "processed": True,
            "message": "Notification token saved",
        }

        response = await client.get(f"/api/notification-status/{ACTOR}")
        body = response.json()
        assert body["hasNotificationTokens"] is True
        assert body["tokenData"]["fid"] == ACTOR_FID
        assert body["tokenData"]["url"] == NOTIFY_URL


class TestNotificationEndpoints:

    @pytest.mark.asyncio
    async def test_status_without_token(self, client):
        response = await client.get(f"/api/notification-status/{ACTOR.upper().replace('0X', '0x')}")

        assert response.status_code == 200
        assert response.json()["hasNotificationTokens"] is False
        assert "tokenData" not in response.json()

    @pytest.mark.asyncio
    async def test_invalid_address(self, client):
        response = await client.get("/api/notification-status/not-an-address")

        assert response.status_code == 400
        assert response.json()["error_code"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_users_listing(self, client, dispatcher):
        await dispatcher.register(ACTOR, ACTOR_FID, "tok-1", NOTIFY_URL)

        response = await client.get("/api/notification-users")

        assert response.json()["totalUsers"] == 1
        assert response.json()["users"] == [{"userAddress": ACTOR, "fid": ACTOR_FID}]

    @pytest.mark.asyncio
    async def test_test_notification(self, client, dispatcher):
        request = {"userAddress": ACTOR, "message": "hello from TipFlow"}

        response = await client.post("/api/test-notification", json=request)
        assert response.json() == {"success": False, "error": "No notification token for this address"}

        await dispatcher.register(ACTOR, ACTOR_FID, "tok-1", NOTIFY_URL)
        response = await client.post("/api/test-notification", json=request)

        assert response.json() == {"success": True}
        [post] = dispatcher.posts
        assert post["payload"]["title"] == "TipFlow"
        assert post["payload"]["body"] == "hello from TipFlow"

    @pytest.mark.asyncio
    async def test_remove_unverified_users(self, client, dispatcher):
        await dispatcher.register(ACTOR, ACTOR_FID, "tok-1", NOTIFY_URL)
        await dispatcher.register("0x" + "dd" * 20, 5555, "tok-2", NOTIFY_URL)

        response = await client.post("/api/remove-unverified-users")

        body = response.json()
        assert body["totalUsers"] == 2
        assert body["removedCount"] == 1
        assert body["errorCount"] == 0


class TestLedgerEndpoints:

    @pytest.mark.asyncio
    async def test_ledger_summary(self, client):
        response = await client.get("/api/ledger/summary")

        assert response.status_code == 200
        assert response.json()["data"] == {"pending": 0, "settling": 0, "settled": 0, "failed": 0}

    @pytest.mark.asyncio
    async def test_settlement_status(self, client):
        response = await client.get("/api/settlement/status")

        assert response.json()["data"]["status"] == "stopped"
        assert response.json()["data"]["enabled"] is False

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["services"]["database"] == "healthy"
