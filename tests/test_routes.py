import httpx
import pytest

from main import app
from shared.database.models import TicketStatus

from conftest import make_token


@pytest.fixture
async def client(session_maker, oracle):
    app.state.asset_oracle = oracle
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client


async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


async def test_scan_and_verify_flow(client, seed, scanner_headers):
    ticket, qr_string = await seed()

    response = await client.post(
        "/api/v1/gate/scan",
        json={"qr_string": qr_string, "gate_id": "gate-A"},
        headers=scanner_headers
    )
    assert response.status_code == 200
    scan = response.json()
    assert scan["ok"] is True
    assert scan["ticket_id"] == ticket.ticket_id

    response = await client.post(
        "/api/v1/gate/verify",
        json={"verification_id": scan["verification_id"], "gate_id": "gate-A"},
        headers=scanner_headers
    )
    assert response.status_code == 200
    verify = response.json()
    assert verify["ok"] is True
    assert verify["used_at"] is not None
    assert verify["idempotent"] is False

    response = await client.post(
        "/api/v1/gate/scan",
        json={"qr_string": qr_string},
        headers=scanner_headers
    )
    assert response.status_code == 409
    body = response.json()
    assert body == {
        "ok": False,
        "error": "already_redeemed",
        "detail": body["detail"],
        "used_at": body["used_at"],
    }
    assert body["detail"].startswith("Ticket ya utilizado: check-in registrado el")

    response = await client.get(f"/api/v1/gate/tickets/{ticket.ticket_id}", headers=scanner_headers)
    assert response.status_code == 200
    assert response.json()["status"] == TicketStatus.USED.value


async def test_malformed_qr_returns_400(client, scanner_headers):
    response = await client.post(
        "/api/v1/gate/scan",
        json={"qr_string": "not-a-ticket"},
        headers=scanner_headers
    )
    assert response.status_code == 400
    assert response.json()["error"] == "malformed_payload"


async def test_verify_unknown_ticket_returns_404(client, session_maker, scanner_headers):
    response = await client.post(
        "/api/v1/gate/verify",
        json={"ticket_id": "nope"},
        headers=scanner_headers
    )
    assert response.status_code == 404
    assert response.json()["error"] == "ticket_not_found"


async def test_gate_requires_staff_role(client, seed):
    _, qr_string = await seed()

    response = await client.post("/api/v1/gate/scan", json={"qr_string": qr_string})
    assert response.status_code in (401, 403)

    headers = {"Authorization": f"Bearer {make_token('fan-1', role='user')}"}
    response = await client.post("/api/v1/gate/scan", json={"qr_string": qr_string}, headers=headers)
    assert response.status_code == 403


async def test_ticket_qr_png_for_holder(client, seed):
    ticket, _ = await seed()
    headers = {"Authorization": f"Bearer {make_token(ticket.holder_identity, role='user')}"}

    response = await client.get(f"/api/v1/gate/tickets/{ticket.ticket_id}/qr.png", headers=headers)
    assert response.status_code == 200
    assert response.headers["content-type"] == "image/png"
    assert response.content.startswith(b"\x89PNG")

    other = {"Authorization": f"Bearer {make_token('someone-else', role='user')}"}
    response = await client.get(f"/api/v1/gate/tickets/{ticket.ticket_id}/qr.png", headers=other)
    assert response.status_code == 403
