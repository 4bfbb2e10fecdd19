"""Publish an order change envelope to the orders topic.

Useful for manual duplicate-event testing: `--copies 2` sends the same
snapshot twice under distinct event ids, the way a live feed re-delivers.
"""

import argparse
import asyncio
import json
from pathlib import Path

from orderbell.common.events import KafkaBus, order_change_envelope


async def publish(bootstrap_servers: str, topic: str, order_id: str, order: dict, change_type: str, copies: int) -> None:
    """Open producer, publish `copies` envelopes, close producer."""

    bus = KafkaBus(bootstrap_servers)
    try:
        for _ in range(copies):
            await bus.publish(topic, order_change_envelope(order_id, order, change_type))
    finally:
        await bus.close()


def main() -> None:
    """Parse CLI args and publish one order snapshot."""

    parser = argparse.ArgumentParser(description="Publish an order change to Kafka.")
    parser.add_argument("--bootstrap-servers", default="localhost:9092")
    parser.add_argument("--topic", default="orders.changed")
    parser.add_argument("--order-id", required=True)
    parser.add_argument("--status", default=None, help="Override the snapshot status")
    parser.add_argument("--change-type", choices=["added", "modified"], default="modified")
    parser.add_argument("--copies", type=int, default=1)
    parser.add_argument("--json", dest="json_inline", default=None, help="Inline JSON order snapshot")
    parser.add_argument("--file", dest="json_file", default=None, help="Path to JSON order snapshot")
    args = parser.parse_args()

    if args.json_inline and args.json_file:
        raise SystemExit("Provide at most one of --json or --file")

    if args.json_inline:
        order = json.loads(args.json_inline)
    elif args.json_file:
        order = json.loads(Path(args.json_file).read_text())
    else:
        order = {}
    if args.status:
        order["status"] = args.status
    if "status" not in order:
        raise SystemExit("Order snapshot needs a status (use --status)")

    asyncio.run(publish(args.bootstrap_servers, args.topic, args.order_id, order, args.change_type, args.copies))
    print(f"Published {args.copies} change(s) for order={args.order_id} status={order['status']} to topic={args.topic}")


if __name__ == "__main__":
    main()
