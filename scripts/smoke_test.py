from __future__ import annotations

import argparse
import json
import sys
import urllib.error
import urllib.request


def request_json(
    *, url: str, token: str | None = None
) -> tuple[int, dict | None, str]:
    request = urllib.request.Request(url, method="GET")
    request.add_header("Accept", "application/json")
    if token:
        request.add_header("Authorization", f"Bearer {token}")
    try:
        with urllib.request.urlopen(request, timeout=20) as response:
            body = response.read().decode("utf-8")
            data = json.loads(body) if body.startswith("{") or body.startswith("[") else None
            return response.status, data, body
    except urllib.error.HTTPError as exc:
        body = exc.read().decode("utf-8")
        try:
            data = json.loads(body)
        except json.JSONDecodeError:
            data = None
        return exc.code, data, body


def request_text(*, url: str, token: str | None = None) -> tuple[int, str]:
    request = urllib.request.Request(url, method="GET")
    if token:
        request.add_header("Authorization", f"Bearer {token}")
    try:
        with urllib.request.urlopen(request, timeout=20) as response:
            return response.status, response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read().decode("utf-8")


KPI_PATHS = (
    "/metric/chats-per-agent?preset=today",
    "/metric/frt/messages?preset=7d",
    "/metric/closure-sla?preset=7d&mode=updated",
    "/metric/fcr?preset=30d",
    "/metric/abandonment",
)
EXPECTED_KPIS = {
    "total_chats",
    "fcr_rate",
    "agent_satisfaction_pct",
    "avg_frt_minutes",
    "manual_refund_rate",
    "abandonment_rate",
    "long_running_pct",
    "slow_closure_rate",
}


def assert_true(condition: bool, message: str) -> None:
    if not condition:
        raise RuntimeError(message)


def main() -> int:
    parser = argparse.ArgumentParser(description="Smoke test for Support Desk KPI API.")
    parser.add_argument("--base-url", required=True)
    parser.add_argument("--auth-mode", choices=["enabled", "disabled"], default="enabled")
    parser.add_argument("--token", default="")
    args = parser.parse_args()

    base_url = args.base_url.rstrip("/")
    token = args.token.strip() or None

    status, data, _ = request_json(url=f"{base_url}/health")
    assert_true(status == 200, f"/health expected 200, got {status}")
    assert_true(isinstance(data, dict) and data.get("status") == "ok", "/health invalid payload")
    print("OK /health")

    status, data, _ = request_json(url=f"{base_url}/health/ready")
    assert_true(status == 200, f"/health/ready expected 200, got {status}")
    assert_true(
        isinstance(data, dict) and data.get("status") == "ready",
        "/health/ready invalid payload",
    )
    print("OK /health/ready")

    status, body = request_text(url=f"{base_url}/metrics")
    assert_true(status == 200, f"/metrics expected 200, got {status}")
    assert_true("support_desk_requests_total" in body, "/metrics missing requests counter")
    print("OK /metrics")

    expect_open = args.auth_mode == "disabled" or token is not None
    for path in KPI_PATHS:
        status, data, _ = request_json(url=f"{base_url}{path}", token=token)
        if expect_open:
            assert_true(status == 200, f"{path} expected 200, got {status}")
            assert_true(data is not None, f"{path} returned a non-JSON body")
        else:
            assert_true(status in {401, 403}, f"{path} without token expected 401/403, got {status}")
        print(f"OK {path}")

    if expect_open:
        status, data, _ = request_json(url=f"{base_url}/metric/comparison?preset=7d", token=token)
        assert_true(status == 200, f"/metric/comparison expected 200, got {status}")
        kpis = {item.get("kpi") for item in (data or {}).get("metrics", [])}
        assert_true(not EXPECTED_KPIS - kpis, f"/metric/comparison missing {EXPECTED_KPIS - kpis}")
        print("OK /metric/comparison")

    print("Smoke test passed.")
    return 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except Exception as exc:
        print(f"Smoke test failed: {exc}", file=sys.stderr)
        sys.exit(1)

