"""Deliver one signed gateway webhook several times.

Duplicate-delivery drill: the balance must move once no matter how many
copies arrive.
"""

import argparse
import asyncio
import hashlib
import hmac
import json
import os

import httpx

SIGNATURE_HEADERS = {
    "cryptobot": "crypto-pay-api-signature",
    "xrocket": "rocket-pay-signature",
}


def sign(body: bytes, api_token: str) -> str:
    key = hashlib.sha256(api_token.encode()).digest()
    return hmac.new(key, body, hashlib.sha256).hexdigest()


def build_body(gateway: str, invoice_id: str, payload: dict) -> bytes:
    encoded = json.dumps(payload, separators=(",", ":"))
    if gateway == "cryptobot":
        update = {
            "update_id": 1,
            "update_type": "invoice_paid",
            "payload": {
                "invoice_id": int(invoice_id) if invoice_id.isdigit() else invoice_id,
                "status": "paid",
                "asset": "USDT",
                "payload": encoded,
            },
        }
    else:
        update = {"id": invoice_id, "status": "paid", "currency": "USDT", "payload": encoded}
    return json.dumps(update).encode("utf-8")


async def deliver(url: str, header: str, body: bytes, signature: str, copies: int, concurrent: bool) -> list[int]:
    async with httpx.AsyncClient(timeout=10.0) as client:

        async def one() -> int:
            resp = await client.post(
                url, content=body, headers={header: signature, "Content-Type": "application/json"}
            )
            return resp.status_code

        if concurrent:
            return list(await asyncio.gather(*(one() for _ in range(copies))))
        return [await one() for _ in range(copies)]


def main() -> None:
    parser = argparse.ArgumentParser(description="Replay a signed payment webhook N times.")
    parser.add_argument("--gateway", choices=sorted(SIGNATURE_HEADERS), default="cryptobot")
    parser.add_argument("--webhooks-url", default="http://localhost:8002")
    parser.add_argument("--invoice-id", required=True)
    parser.add_argument("--user-id", required=True)
    parser.add_argument("--amount-rub", required=True)
    parser.add_argument("--order-id", default=None)
    parser.add_argument("--copies", type=int, default=2)
    parser.add_argument("--concurrent", action="store_true", help="Fire all copies at once")
    parser.add_argument("--api-token", default=None, help="Gateway API token (defaults to env)")
    args = parser.parse_args()

    env_name = "CRYPTOBOT_API_TOKEN" if args.gateway == "cryptobot" else "XROCKET_API_TOKEN"
    api_token = args.api_token or os.getenv(env_name, "")
    if not api_token:
        raise SystemExit(f"Provide --api-token or set {env_name}")

    payload = {"userId": args.user_id, "amountRub": float(args.amount_rub), "balanceToUse": 0}
    if args.order_id:
        payload["orderId"] = args.order_id
    body = build_body(args.gateway, args.invoice_id, payload)
    statuses = asyncio.run(
        deliver(
            f"{args.webhooks_url}/webhooks/{args.gateway}",
            SIGNATURE_HEADERS[args.gateway],
            body,
            sign(body, api_token),
            args.copies,
            args.concurrent,
        )
    )
    print(json.dumps({"gateway": args.gateway, "invoice_id": args.invoice_id, "statuses": statuses}))


if __name__ == "__main__":
    main()
