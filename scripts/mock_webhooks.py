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


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Send mock tracked clicks followed by inbound WhatsApp messages to a local API."
    )
    parser.add_argument("--base-url", default="http://127.0.0.1:8000")
    parser.add_argument("--tenant-id", type=int, default=1)
    parser.add_argument("--count", type=int, default=5)
    parser.add_argument("--start-index", type=int, default=1)
    parser.add_argument("--tracking-id", default=None, help="Reuse an existing link id for every click.")
    parser.add_argument("--with-token", action="store_true", help="Embed the tracking id in the message.")
    parser.add_argument("--skip-clicks", action="store_true")
    parser.add_argument("--secret", default="")
    parser.add_argument("--token", default="", help="Bearer token with the service role.")
    args = parser.parse_args()

    base_url = args.base_url.rstrip("/")
    auth_headers: dict[str, str] = {}
    if args.token:
        auth_headers["Authorization"] = f"Bearer {args.token}"

    for index in range(args.start_index, args.start_index + args.count):
        tracking_id = args.tracking_id
        if not args.skip_clicks:
            click = {
                "tenant_id": args.tenant_id,
                "tracking_id": tracking_id,
                "utm_data": {"utm_source": "mock", "utm_campaign": "local"},
                "page_url": f"https://shop.example.com/product/{index}",
                "session_id": f"sess_mock_{index}",
                "event_type": "whatsapp_click",
            }
            status_code, response = post_json(
                f"{base_url}/track/whatsapp-click",
                json.dumps(click).encode("utf-8"),
                {},
            )
            print(f"{status_code} click {response}")
            if status_code == 200:
                tracking_id = json.loads(response)["tracking_id"]

        event_id = f"evt_mock_message_{index}"
        content = f"Hello, I saw the product {index}"
        if args.with_token and tracking_id:
            content = f"{content} {tracking_id}"
        payload = {
            "event_id": event_id,
            "tenant_id": args.tenant_id,
            "event_type": "inbound_message",
            "phone": f"55119{index:08d}",
            "payload": {
                "content": content,
                "message_id": f"wamid.mock.{index}",
            },
        }
        body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        headers = dict(auth_headers)
        if args.secret:
            headers["X-Hub-Signature-256"] = sign_payload(args.secret, body)
        status_code, response = post_json(f"{base_url}/webhooks/whatsapp", body, headers)
        print(f"{status_code} {event_id} {response}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
