from __future__ import annotations

import argparse
import hashlib
import hmac
import json
import sys
import urllib.error
import urllib.request


def sign_payload(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def post_json(url: str, body: bytes, headers: dict[str, str]) -> tuple[int, str]:
    request = urllib.request.Request(url, data=body, method="POST")
    request.add_header("Content-Type", "application/json")
    for key, value in headers.items():
        request.add_header(key, value)
    try:
        with urllib.request.urlopen(request, timeout=15) as response:
            content = response.read().decode("utf-8")
            return response.status, content
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read().decode("utf-8")


def build_payload(args: argparse.Namespace, index: int) -> tuple[str, dict[str, object]]:
    provider_message_id = f"wamid_mock_{args.kind}_{index}"
    if args.kind == "inbound":
        return "/whatsapp/webhook/inbound", {
            "workspaceId": args.workspace,
            "fromPhone": args.phone,
            "text": args.text or f"mock reply {index}",
            "provider": args.provider,
            "providerMessageId": provider_message_id,
        }
    if not args.lead_id:
        raise SystemExit("--lead-id is required for status webhooks")
    return "/proof/whatsapp/status", {
        "leadId": args.lead_id,
        "provider": args.provider,
        "providerMessageId": provider_message_id,
        "status": args.status,
    }


def main() -> int:
    parser = argparse.ArgumentParser(description="Send mock WhatsApp webhooks to a local API.")
    parser.add_argument("--base-url", default="http://127.0.0.1:8000")
    parser.add_argument("--kind", choices=["inbound", "status"], default="inbound")
    parser.add_argument("--count", type=int, default=1)
    parser.add_argument("--start-index", type=int, default=1)
    parser.add_argument("--repeat", type=int, default=1, help="Deliver each webhook N times.")
    parser.add_argument("--workspace", default="ws_demo")
    parser.add_argument("--phone", default="+40700000001")
    parser.add_argument("--text", default=None)
    parser.add_argument("--lead-id", default=None)
    parser.add_argument("--status", choices=["sent", "delivered", "read", "replied"], default="delivered")
    parser.add_argument("--provider", choices=["stub", "twilio", "360dialog"], default="stub")
    parser.add_argument("--secret", default="")
    parser.add_argument("--token", default="")
    args = parser.parse_args()

    for index in range(args.start_index, args.start_index + args.count):
        path, payload = build_payload(args, index)
        body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        headers: dict[str, str] = {}
        if args.secret:
            headers["X-Hub-Signature-256"] = sign_payload(args.secret, body)
        if args.token:
            headers["Authorization"] = f"Bearer {args.token}"
        for _ in range(max(args.repeat, 1)):
            status_code, response = post_json(f"{args.base_url.rstrip('/')}{path}", body, headers)
            print(f"{status_code} {payload['providerMessageId']} {response}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
