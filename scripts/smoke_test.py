from __future__ import annotations

import argparse
import json
import sys
import urllib.error
import urllib.request
import uuid


def request_json(
    *,
    url: str,
    token: str | None = None,
    method: str = "GET",
    body: dict | None = None,
    headers: dict[str, str] | None = None,
) -> tuple[int, dict | list | None, str]:
    data = json.dumps(body).encode("utf-8") if body is not None else None
    request = urllib.request.Request(url, data=data, method=method)
    request.add_header("Accept", "application/json")
    if data is not None:
        request.add_header("Content-Type", "application/json")
    if token:
        request.add_header("Authorization", f"Bearer {token}")
    for key, value in (headers or {}).items():
        request.add_header(key, value)
    try:
        with urllib.request.urlopen(request, timeout=20) as response:
            text = response.read().decode("utf-8")
            parsed = json.loads(text) if text.startswith("{") or text.startswith("[") else None
            return response.status, parsed, text
    except urllib.error.HTTPError as exc:
        text = exc.read().decode("utf-8")
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError:
            parsed = None
        return exc.code, parsed, text


def request_text(*, url: str, token: str | None = None) -> tuple[int, str]:
    request = urllib.request.Request(url, method="GET")
    if token:
        request.add_header("Authorization", f"Bearer {token}")
    try:
        with urllib.request.urlopen(request, timeout=20) as response:
            return response.status, response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read().decode("utf-8")


def assert_true(condition: bool, message: str) -> None:
    if not condition:
        raise RuntimeError(message)


def check_ingestion_replay(base_url: str, token: str | None, workspace: str) -> None:
    key = f"smoke-{uuid.uuid4().hex[:12]}"
    payload = {"workspaceId": workspace, "firstName": "Smoke", "source": "smoke_test"}
    headers = {"Idempotency-Key": key}
    first_status, first, _ = request_json(
        url=f"{base_url}/leads", token=token, method="POST", body=payload, headers=headers
    )
    assert_true(first_status == 201, f"POST /leads expected 201, got {first_status}")
    second_status, second, _ = request_json(
        url=f"{base_url}/leads", token=token, method="POST", body=payload, headers=headers
    )
    assert_true(second_status == 200, f"POST /leads replay expected 200, got {second_status}")
    assert_true(
        isinstance(first, dict) and isinstance(second, dict) and first["leadId"] == second["leadId"],
        "POST /leads replay returned a different lead",
    )
    assert_true(second["idempotency"]["reused"] is True, "POST /leads replay not flagged reused")
    print("OK /leads idempotent replay")

    detail_status, detail, _ = request_json(url=f"{base_url}/leads/{first['leadId']}", token=token)
    assert_true(detail_status == 200, f"GET /leads/{{id}} expected 200, got {detail_status}")
    assert_true(
        isinstance(detail, dict) and detail.get("sla") and detail["sla"]["stoppedAt"] is None,
        "new lead has no running SLA clock",
    )
    assert_true(
        detail["autopilot"] is not None and detail["autopilot"]["node"] == "q1",
        "new lead has no autopilot run at q1",
    )
    print("OK lead detail shows SLA clock and autopilot run")


def main() -> int:
    parser = argparse.ArgumentParser(description="Smoke test for Lead Autopilot API.")
    parser.add_argument("--base-url", required=True)
    parser.add_argument("--auth-mode", choices=["enabled", "disabled"], default="enabled")
    parser.add_argument("--token", default="")
    parser.add_argument("--workspace", default="", help="Also exercise idempotent ingestion.")
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
    assert_true("lead_autopilot_requests_total" in body, "/metrics missing requests counter")
    assert_true("lead_autopilot_sla_running" in body, "/metrics missing SLA backlog gauge")
    assert_true("lead_autopilot_queued_messages" in body, "/metrics missing dispatch backlog gauge")
    print("OK /metrics")

    protected_status, _, _ = request_json(url=f"{base_url}/leads?limit=1", token=token)
    if args.auth_mode == "enabled":
        if token:
            assert_true(
                protected_status == 200,
                f"/leads with token expected 200, got {protected_status}",
            )
            print("OK /leads with token")
        else:
            assert_true(
                protected_status in {401, 403},
                f"/leads without token expected 401/403, got {protected_status}",
            )
            print("OK /leads unauthorized")
    else:
        assert_true(
            protected_status == 200,
            f"/leads expected 200 with auth disabled, got {protected_status}",
        )
        print("OK /leads with auth disabled")

    if args.workspace:
        check_ingestion_replay(base_url, token, args.workspace)

    print("Smoke test passed.")
    return 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except Exception as exc:
        print(f"Smoke test failed: {exc}", file=sys.stderr)
        sys.exit(1)
