#!/usr/bin/env python3
"""Check the HMAC of every review audit record; also reports client/server disagreements."""
import os, sys, json, argparse

from moderation.security import verify_record


def main():
    ap = argparse.ArgumentParser()
    ap.add_argument("--log", default=os.getenv("AUDIT_LOG", "logs/audit.jsonl"))
    ap.add_argument("--secret", default=os.getenv("AUDIT_HMAC", "change_me_in_prod"))
    args = ap.parse_args()

    total = ok = disagree = 0
    with open(args.log, encoding="utf-8") as f:
        for i, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            total += 1
            try:
                obj = json.loads(line)
            except ValueError:
                print(f"line {i}: not JSON", file=sys.stderr)
                continue
            if verify_record(obj, args.secret):
                ok += 1
            else:
                print(f"line {i}: HMAC MISMATCH", file=sys.stderr)
            if (obj.get("client") or {}).get("action") != (obj.get("server") or {}).get("action"):
                disagree += 1
    pct = (ok / total * 100.0) if total else 100.0
    print(f"Verified {ok}/{total} lines ({pct:.1f}%). Client/server action disagreements: {disagree}.")
    if total and ok < total:
        sys.exit(1)


if __name__ == "__main__":
    main()
