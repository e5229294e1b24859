"""Tests for the HTTP API. Requests run the transition sweep against the real clock,
so open draws here are dated relative to now."""

from datetime import timedelta

import httpx
import pytest
from fastapi import FastAPI

from prizedraws.database.repositories import MajorDrawRepository, MiniDrawRepository
from prizedraws.utils.timezone import utcnow
from prizedraws.webapp.middlewares.rate_limiter import RateLimiter, RateLimiterMiddleware

from conftest import CRON_SECRET


@pytest.fixture
def make_open_draw(make_major_draw):
    async def _make(status="active", days_until_draw=20, **kwargs):
        draw_date = (utcnow() + timedelta(days=days_until_draw)).replace(microsecond=0)
        return await make_major_draw(status=status, draw_date=draw_date, **kwargs)
    return _make


def payment(payment_id="pi_api_1", user_id="user-u", entries=100, **kwargs):
    return {"payment_id": payment_id, "user_id": user_id, "entries": entries, **kwargs}


class TestRoot:
    async def test_root(self, client):
        response = await client.get("/")
        assert response.status_code == 200
        assert response.json() == {"message": "Prize Draws API is running", "version": "1.0.0"}


class TestInternalAuth:
    async def test_missing_token(self, client):
        response = await client.post("/api/payments/entries", json=payment())
        assert response.status_code == 401

    async def test_wrong_token(self, client):
        response = await client.post("/api/payments/entries", json=payment(),
                                     headers={"Authorization": "Bearer nope"})
        assert response.status_code == 403

    async def test_cron_secret_only_opens_cron_paths(self, client):
        response = await client.post("/api/payments/entries", json=payment(),
                                     headers={"Authorization": f"Bearer {CRON_SECRET}"})
        assert response.status_code == 403


class TestPaymentEntries:
    async def test_credit_and_replay(self, client, internal_headers, make_open_draw):
        draw = await make_open_draw()

        first = await client.post("/api/payments/entries", json=payment(), headers=internal_headers)
        assert first.status_code == 200
        body = first.json()
        assert body["applied"] is True
        assert body["duplicate"] is False
        assert body["draw_kind"] == "major"
        assert body["draw_id"] == draw.id
        assert body["total_entries"] == 100

        replay = await client.post("/api/payments/entries", json=payment(), headers=internal_headers)
        assert replay.status_code == 200
        assert replay.json()["applied"] is False
        assert replay.json()["duplicate"] is True

        stored = await client.get(f"/api/major-draw/{draw.id}")
        assert stored.json()["total_entries"] == 100

    async def test_package_type_maps_to_source(self, client, internal_headers, make_open_draw):
        draw = await make_open_draw()

        await client.post("/api/payments/entries", headers=internal_headers,
                          json=payment(package_type="upsell", entries=7))

        response = await client.get(f"/api/major-draw/{draw.id}/entries/user-u")
        assert response.status_code == 200
        assert response.json()["total_entries"] == 7
        assert response.json()["entries_by_source"]["upsell"] == 7

    async def test_no_draw_available(self, client, internal_headers):
        response = await client.post("/api/payments/entries", json=payment(), headers=internal_headers)

        assert response.status_code == 409
        assert response.json()["success"] is False
        assert response.json()["error"] == "NoActiveDrawError"

    async def test_zero_entries_rejected(self, client, internal_headers, make_open_draw):
        await make_open_draw()
        response = await client.post("/api/payments/entries", json=payment(entries=0), headers=internal_headers)
        assert response.status_code == 422

    async def test_mini_draw_payment(self, client, internal_headers, make_mini_draw):
        draw = await make_mini_draw(minimum_entries=5)

        response = await client.post("/api/payments/entries", headers=internal_headers,
                                     json=payment(entries=2, package_type="mini-draw", mini_draw_id=draw.id))

        assert response.status_code == 200
        assert response.json()["draw_kind"] == "mini"
        assert response.json()["draw_id"] == draw.id
        assert response.json()["total_entries"] == 2

    async def test_mini_draw_over_capacity(self, client, internal_headers, make_mini_draw):
        draw = await make_mini_draw(minimum_entries=5)

        response = await client.post("/api/payments/entries", headers=internal_headers,
                                     json=payment(entries=10, package_type="mini-draw", mini_draw_id=draw.id))

        assert response.status_code == 409
        assert response.json()["error"] == "MiniDrawCapacityError"


class TestMajorDrawRead:
    async def test_current_draw(self, client, make_open_draw):
        draw = await make_open_draw()

        response = await client.get("/api/major-draw/current")

        assert response.status_code == 200
        body = response.json()
        assert body["draw"]["id"] == draw.id
        assert body["display_status"]["status"] == "Active"
        assert body["is_frozen"] is False
        assert body["seconds_until_draw"] > body["seconds_until_freeze"] > 0

    async def test_no_current_draw(self, client):
        response = await client.get("/api/major-draw/current")
        assert response.status_code == 404

    async def test_completed_draws(self, client, make_major_draw):
        completed = await make_major_draw(status="completed")

        response = await client.get("/api/major-draw/completed")

        assert response.status_code == 200
        assert [d["id"] for d in response.json()] == [completed.id]

    async def test_entries_for_user_without_entries(self, client, make_open_draw):
        draw = await make_open_draw()

        response = await client.get(f"/api/major-draw/{draw.id}/entries/user-none")

        assert response.status_code == 200
        assert response.json()["total_entries"] == 0
        assert set(response.json()["entries_by_source"].values()) == {0}

    async def test_unknown_draw(self, client):
        assert (await client.get("/api/major-draw/999")).status_code == 404
        assert (await client.get("/api/major-draw/999/entries/user-u")).status_code == 404


class TestMiniDrawRead:
    async def test_list_active(self, client, make_mini_draw):
        draw = await make_mini_draw()

        response = await client.get("/api/mini-draws")

        assert response.status_code == 200
        assert [d["id"] for d in response.json()] == [draw.id]
        assert response.json()[0]["remaining_entries"] == 10

    async def test_unknown_status(self, client):
        response = await client.get("/api/mini-draws", params={"status": "frozen"})
        assert response.status_code == 422

    async def test_get_by_id(self, client, make_mini_draw):
        draw = await make_mini_draw()
        response = await client.get(f"/api/mini-draws/{draw.id}")
        assert response.status_code == 200
        assert response.json()["display_status"]["status"] == "Active"
        assert (await client.get("/api/mini-draws/999")).status_code == 404


class TestCron:
    async def test_requires_auth(self, client):
        response = await client.get("/api/cron/major-draw-transition")
        assert response.status_code == 401

    async def test_cron_secret_completes_past_draw(self, client, session, make_open_draw):
        draw = await make_open_draw(days_until_draw=-1)

        response = await client.get("/api/cron/major-draw-transition",
                                    headers={"Authorization": f"Bearer {CRON_SECRET}"})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["completed"] == [draw.id]
        assert body["next_draw_created"] is None

        stored = await MajorDrawRepository(session).get_by_id(draw.id, refresh=True)
        assert stored.status == "completed"

    async def test_internal_secret_is_accepted(self, client, internal_headers):
        response = await client.get("/api/cron/major-draw-transition", headers=internal_headers)
        assert response.status_code == 200
        assert response.json()["completed"] == []


class TestTransitionMiddleware:
    async def test_request_activates_due_draw(self, client, session, make_open_draw):
        draw = await make_open_draw(status="queued", activation_date=utcnow() - timedelta(hours=1))

        await client.get("/")

        stored = await MajorDrawRepository(session).get_by_id(draw.id, refresh=True)
        assert stored.status == "active"


class TestAdminMajorDraw:
    async def test_create(self, client, session, internal_headers):
        draw_date = (utcnow() + timedelta(days=25)).replace(microsecond=0)

        response = await client.post("/api/admin/major-draw", headers=internal_headers, json={
            "name": "October Major Draw",
            "prize_name": "Workshop fit-out",
            "prize_value": 20000,
            "draw_date": draw_date.isoformat(),
        })

        assert response.status_code == 201
        assert response.json()["status"] == "queued"
        stored = await MajorDrawRepository(session).get_by_id(response.json()["id"])
        assert stored.draw_date == draw_date
        assert stored.freeze_entries_at == draw_date - timedelta(minutes=30)

    async def test_create_with_freeze_after_draw(self, client, internal_headers):
        draw_date = utcnow() + timedelta(days=25)

        response = await client.post("/api/admin/major-draw", headers=internal_headers, json={
            "name": "Broken Draw",
            "draw_date": draw_date.isoformat(),
            "freeze_entries_at": (draw_date + timedelta(hours=1)).isoformat(),
        })

        assert response.status_code == 422

    async def test_update(self, client, internal_headers, make_open_draw):
        draw = await make_open_draw()

        response = await client.patch(f"/api/admin/major-draw/{draw.id}", headers=internal_headers,
                                      json={"prize_name": "Bigger ute", "name": None})

        assert response.status_code == 200
        assert response.json()["prize_name"] == "Bigger ute"
        assert response.json()["name"] == draw.name

    @pytest.mark.parametrize("shift_days", [-10, 10])
    async def test_moving_draw_date_moves_freeze_time(self, client, session, internal_headers, make_open_draw,
                                                      shift_days):
        draw = await make_open_draw(status="queued")
        draw_id = draw.id
        new_draw_date = (draw.draw_date + timedelta(days=shift_days)).replace(microsecond=0)

        response = await client.patch(f"/api/admin/major-draw/{draw_id}", headers=internal_headers,
                                      json={"draw_date": new_draw_date.isoformat()})

        assert response.status_code == 200
        stored = await MajorDrawRepository(session).get_by_id(draw_id, refresh=True)
        assert stored.draw_date == new_draw_date
        assert stored.freeze_entries_at == new_draw_date - timedelta(minutes=30)

    async def test_explicit_freeze_time_is_kept(self, client, session, internal_headers, make_open_draw):
        draw = await make_open_draw(status="queued")
        draw_id = draw.id
        new_draw_date = (draw.draw_date + timedelta(days=5)).replace(microsecond=0)
        freeze_at = new_draw_date - timedelta(hours=2)

        response = await client.patch(f"/api/admin/major-draw/{draw_id}", headers=internal_headers, json={
            "draw_date": new_draw_date.isoformat(),
            "freeze_entries_at": freeze_at.isoformat(),
        })

        assert response.status_code == 200
        stored = await MajorDrawRepository(session).get_by_id(draw_id, refresh=True)
        assert stored.freeze_entries_at == freeze_at

    async def test_locked_draw_cannot_be_edited(self, client, internal_headers, make_major_draw):
        draw = await make_major_draw(status="completed")

        response = await client.patch(f"/api/admin/major-draw/{draw.id}", headers=internal_headers,
                                      json={"prize_name": "Something else"})

        assert response.status_code == 423
        assert response.json()["error"] == "ConfigurationLockedError"

    async def test_cancel_twice(self, client, internal_headers, make_open_draw):
        draw = await make_open_draw()

        first = await client.post(f"/api/admin/major-draw/{draw.id}/cancel", headers=internal_headers)
        second = await client.post(f"/api/admin/major-draw/{draw.id}/cancel", headers=internal_headers)

        assert first.status_code == 200
        assert first.json()["status"] == "cancelled"
        assert second.status_code == 409

    async def test_select_winner(self, client, session, internal_headers, make_open_draw):
        draw = await make_open_draw()
        repo = MajorDrawRepository(session)
        await repo.apply_entry(draw.id, "user-a", 5, "membership")
        await repo.transition(draw.id, ("active",), "frozen", lock=True)

        response = await client.post(f"/api/admin/major-draw/{draw.id}/winner", headers=internal_headers,
                                     json={"user_id": "user-a", "entry_number": 3})

        assert response.status_code == 200
        assert response.json()["status"] == "completed"
        assert response.json()["winner"]["user_id"] == "user-a"
        assert response.json()["winner"]["selection_method"] == "government-app"

    async def test_unknown_selection_method(self, client, internal_headers, make_open_draw):
        draw = await make_open_draw()
        response = await client.post(f"/api/admin/major-draw/{draw.id}/winner", headers=internal_headers,
                                     json={"user_id": "user-a", "entry_number": 1, "selection_method": "dice"})
        assert response.status_code == 422


class TestAdminMiniDraw:
    async def test_create_fill_and_pick_winner(self, client, internal_headers):
        created = await client.post("/api/admin/mini-draw", headers=internal_headers, json={
            "name": "Drill Kit Mini Draw",
            "minimum_entries": 3,
            "prize_name": "Drill kit",
        })
        assert created.status_code == 201
        draw_id = created.json()["id"]
        assert created.json()["status"] == "active"

        for payment_id, user_id, entries in (("pi_m1", "user-a", 1), ("pi_m2", "user-b", 2)):
            response = await client.post("/api/payments/entries", headers=internal_headers, json=payment(
                payment_id=payment_id, user_id=user_id, entries=entries,
                package_type="mini-draw", mini_draw_id=draw_id,
            ))
            assert response.status_code == 200
        assert response.json()["draw_status"] == "completed"

        winner = await client.post(f"/api/admin/mini-draw/{draw_id}/winner", headers=internal_headers,
                                   json={"user_id": "user-b", "entry_number": 2, "selection_method": "manual"})

        assert winner.status_code == 200
        assert winner.json()["winner"]["user_id"] == "user-b"
        assert winner.json()["winner"]["entry_number"] == 2

    async def test_complete_and_cancel(self, client, internal_headers, make_mini_draw):
        first = await make_mini_draw(name="First")
        second = await make_mini_draw(name="Second")

        completed = await client.post(f"/api/admin/mini-draw/{first.id}/complete", headers=internal_headers)
        cancelled = await client.post(f"/api/admin/mini-draw/{second.id}/cancel", headers=internal_headers)
        again = await client.post(f"/api/admin/mini-draw/{second.id}/complete", headers=internal_headers)

        assert completed.json()["status"] == "completed"
        assert cancelled.json()["status"] == "cancelled"
        assert again.status_code == 409

    async def test_lowering_minimum_closes_draw(self, client, session, internal_headers, make_mini_draw):
        draw = await make_mini_draw(minimum_entries=10)
        await MiniDrawRepository(session).apply_entry(draw.id, "user-a", 4, "mini-draw-package")

        response = await client.patch(f"/api/admin/mini-draw/{draw.id}", headers=internal_headers,
                                      json={"minimum_entries": 4})

        assert response.status_code == 200
        assert response.json()["status"] == "completed"

    async def test_minimum_below_total_rejected(self, client, session, internal_headers, make_mini_draw):
        draw = await make_mini_draw(minimum_entries=10)
        await MiniDrawRepository(session).apply_entry(draw.id, "user-a", 4, "mini-draw-package")

        response = await client.patch(f"/api/admin/mini-draw/{draw.id}", headers=internal_headers,
                                      json={"minimum_entries": 3})

        assert response.status_code == 422


class TestRateLimiter:
    def test_blocks_after_limit(self):
        limiter = RateLimiter(window_size=60, max_requests=2)

        allowed, info = limiter.is_allowed("client", now=1000.0)
        assert allowed is True
        assert info["remaining"] == 1
        assert limiter.is_allowed("client", now=1010.0)[1]["remaining"] == 0

        allowed, info = limiter.is_allowed("client", now=1020.0)
        assert allowed is False
        assert info["retry_after"] == 40
        assert limiter.is_allowed("other-client", now=1020.0)[0] is True

    def test_window_slides(self):
        limiter = RateLimiter(window_size=60, max_requests=1)

        assert limiter.is_allowed("client", now=1000.0)[0] is True
        assert limiter.is_allowed("client", now=1059.0)[0] is False
        assert limiter.is_allowed("client", now=1060.0)[0] is True

    def test_cleanup_forgets_idle_clients(self):
        limiter = RateLimiter(window_size=60, max_requests=2)
        limiter.is_allowed("idle", now=0.0)
        limiter.is_allowed("busy", now=5000.0)

        assert limiter.cleanup(max_idle_time=60, now=5000.0) == 1
        assert set(limiter.clients) == {"busy"}

    async def test_middleware_returns_429(self):
        app = FastAPI()
        app.add_middleware(RateLimiterMiddleware, default_window_size=60, default_max_requests=1,
                           path_limits={"/api/mini-draws": (60, 5)})

        @app.get("/ping")
        async def ping():
            return {"ok": True}

        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
            first = await client.get("/ping")
            second = await client.get("/ping")

        assert first.status_code == 200
        assert first.headers["X-RateLimit-Remaining"] == "0"
        assert second.status_code == 429
        assert int(second.headers["Retry-After"]) >= 1
