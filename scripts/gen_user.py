#!/usr/bin/env python3
import argparse, asyncio, os, sys, uuid

from tasksync.core import crypto
from tasksync.core.identity import SECRET_ENV, issue_token
from tasksync.core.store import Store


async def create(args) -> str:
    async with Store(args.db) as store:
        await store.upsert_user(args.user_id, name=args.name, email=args.email, is_active=not args.inactive)
    if args.rs256:
        priv_pem, _ = crypto.ensure_rsa_pair(args.key_dir + "/jwt_priv.pem", args.key_dir + "/jwt_pub.pem")
        return issue_token(args.user_id, algorithm="RS256", private_key_pem=priv_pem, ttl_s=args.ttl)
    return issue_token(args.user_id, secret=args.secret, ttl_s=args.ttl)


def main():
    ap = argparse.ArgumentParser(description="Create (or update) a user in the store and print a token for it")
    ap.add_argument("--name", required=True)
    ap.add_argument("--email", default="")
    ap.add_argument("--user-id", default=str(uuid.uuid4()))
    ap.add_argument("--db", default="tasksync.db")
    ap.add_argument("--secret", default=os.getenv(SECRET_ENV))
    ap.add_argument("--rs256", action="store_true", help="sign with keys/jwt_priv.pem instead of the shared secret")
    ap.add_argument("--key-dir", default="keys")
    ap.add_argument("--ttl", type=int, default=7 * 24 * 3600)
    ap.add_argument("--inactive", action="store_true")
    args = ap.parse_args()

    if not args.rs256 and not args.secret:
        sys.exit(f"need --secret or {SECRET_ENV}")

    token = asyncio.run(create(args))
    print(f"Created user {args.name} with id {args.user_id} in {args.db}")
    print(token)


if __name__ == "__main__":
    main()
