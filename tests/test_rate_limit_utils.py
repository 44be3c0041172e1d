from fastapi import FastAPI, Request, Depends
from fastapi.testclient import TestClient

from autozap.apis.record_api import create_record_api
from autozap.services.record_service import RecordService, RECORD_RESOURCES
from autozap.utils.rate_limit_utils import RateLimiter, get_client_ip, rate_limit_dependency


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_limiter_blocks_after_points_and_recovers():
    clock = FakeClock()
    limiter = RateLimiter(name="api", points=2, duration_seconds=60, clock=clock)

    assert limiter.hit("203.0.113.7") is None
    assert limiter.hit("203.0.113.7") is None
    assert limiter.hit("203.0.113.7") == 60
    assert limiter.hit("198.51.100.1") is None

    clock.now += 30
    assert limiter.hit("203.0.113.7") == 30

    clock.now += 31
    assert limiter.hit("203.0.113.7") is None


def test_blocked_requests_do_not_extend_the_window():
    clock = FakeClock()
    limiter = RateLimiter(name="api", points=1, duration_seconds=10, clock=clock)
    limiter.hit("a")

    for _ in range(5):
        clock.now += 1
        limiter.hit("a")

    clock.now += 5
    assert limiter.hit("a") is None


def test_client_ip_prefers_proxy_headers():
    app = FastAPI()

    @app.get("/ip")
    async def ip(request: Request):
        return {"ip": get_client_ip(request)}

    client = TestClient(app)

    assert client.get("/ip", headers={"x-forwarded-for": "203.0.113.7, 10.0.0.1"}).json() == {"ip": "203.0.113.7"}
    assert client.get("/ip", headers={"x-real-ip": "198.51.100.4"}).json() == {"ip": "198.51.100.4"}
    assert client.get("/ip").json() == {"ip": "testclient"}


def test_rate_limited_record_routes(log_util, app_db):
    limiter = RateLimiter(name="api", points=2, duration_seconds=60, clock=FakeClock())
    app = FastAPI()
    app.include_router(create_record_api(
        log_util=log_util,
        record_service=RecordService(log_util=log_util, app_db=app_db, resource=RECORD_RESOURCES["pix_keys"]),
        prefix="/api/pix-keys",
        tag="pix-keys",
        dependencies=[Depends(rate_limit_dependency(limiter, log_util))]
    ))
    client = TestClient(app)
    headers = {"x-user-id": "user-1", "x-forwarded-for": "203.0.113.7"}

    assert client.get("/api/pix-keys", headers=headers).status_code == 200
    assert client.post("/api/pix-keys", json={"label": "Loja", "key": "loja@pix.test"}, headers=headers).status_code == 201

    blocked = client.get("/api/pix-keys", headers=headers)
    assert blocked.status_code == 429
    assert blocked.headers["Retry-After"] == "60"
    assert blocked.json() == {"detail": "Muitas requisições. Tente novamente em 60 segundo(s)."}
    assert any("Rate limit 'api' exceeded by 203.0.113.7" in message for message in log_util.messages("warning"))

    other_client = {"x-user-id": "user-1", "x-forwarded-for": "198.51.100.1"}
    assert client.get("/api/pix-keys", headers=other_client).status_code == 200
