"""Write a branch's notification config to Redis and announce the change.

Running dispatchers re-read the hash when they see the announcement.
"""

import argparse

import redis

from orderbell.services.dispatch.config_source import NotificationConfig, config_key


def main() -> None:
    """Parse CLI args, write the config hash, publish a change ping."""

    parser = argparse.ArgumentParser(description="Set notification config for one merchant branch.")
    parser.add_argument("--redis-url", default="redis://localhost:6379/0")
    parser.add_argument("--merchant-id", required=True)
    parser.add_argument("--branch-id", required=True)
    parser.add_argument("--destination", default="")
    parser.add_argument("--disable", action="store_true")
    args = parser.parse_args()

    config = NotificationConfig(enabled=not args.disable, destination=args.destination or None)
    if config.enabled and not config.available:
        print(f"Warning: destination {args.destination!r} is not deliverable; notifications stay off.")

    key = config_key(args.merchant_id, args.branch_id)
    rdb = redis.Redis.from_url(args.redis_url, decode_responses=True)
    rdb.hset(key, mapping={"enabled": "true" if config.enabled else "false", "destination": args.destination})
    receivers = rdb.publish(key, "changed")
    print(f"Updated {key} enabled={config.enabled}; {receivers} watcher(s) notified")


if __name__ == "__main__":
    main()
