#!/usr/bin/env python3
from __future__ import annotations

import argparse
import os
import sys
from typing import Optional, Sequence

_WEB_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if _WEB_DIR not in sys.path:
    sys.path.insert(0, _WEB_DIR)

from services.errors import GeositeError  # noqa: E402
from services.geosite_db import TYPE_NAMES, load_geosite_index  # noqa: E402
from services.geosite_rules import generate_rules  # noqa: E402
from services.pac_daemon import process_user_rules  # noqa: E402
from services.pac_preview import route_for_url  # noqa: E402


def _split_csv(s: str) -> list[str]:
    return [p.strip() for p in (s or "").split(",") if p.strip()]


def main(argv: Optional[Sequence[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Inspect a geosite dlc.dat and preview the PAC rules it produces.")
    ap.add_argument("--db", default=os.path.join(os.environ.get("GEOSITE_DATA_DIR", "/var/lib/geosite-pac"), "dlc.dat"))
    sub = ap.add_subparsers(dest="cmd", required=True)

    sub.add_parser("list", help="List group names with entry counts")

    show = sub.add_parser("show", help="Print the entries of one group")
    show.add_argument("group")

    rules = sub.add_parser("rules", help="Print generated rule lines")
    rules.add_argument("--direct", default="cn,geolocation-!cn@cn")
    rules.add_argument("--proxied", default="geolocation-!cn")
    rules.add_argument("--prefer-direct", action="store_true", help="Blacklist mode: proxy only --proxied groups")

    route = sub.add_parser("route", help="Show whether a URL would go through the proxy")
    route.add_argument("url")
    route.add_argument("--direct", default="cn,geolocation-!cn@cn")
    route.add_argument("--proxied", default="geolocation-!cn")
    route.add_argument("--prefer-direct", action="store_true")
    route.add_argument("--user-rules", default="", help="user-rule.txt to apply before the generated rules")

    args = ap.parse_args(list(argv) if argv is not None else None)

    try:
        with open(args.db, "rb") as f:
            index = load_geosite_index(f.read())
    except (OSError, GeositeError) as e:
        print(f"[ERROR] {args.db}: {e}", file=sys.stderr)
        return 1

    try:
        if args.cmd == "list":
            for name in sorted(index.groups()):
                print(f"{name}\t{len(index.get(name))}")
        elif args.cmd == "show":
            for entry in index.get(args.group):
                attrs = " ".join(f"@{a}" for a in sorted(entry.attributes))
                kind = TYPE_NAMES.get(entry.type, str(entry.type))
                print(f"{kind}:{entry.value}" + (f" {attrs}" if attrs else ""))
        elif args.cmd == "rules":
            for line in generate_rules(index, _split_csv(args.direct), _split_csv(args.proxied), args.prefer_direct):
                print(line)
        else:
            user_rules: list[str] = []
            if args.user_rules:
                with open(args.user_rules, encoding="utf-8") as f:
                    user_rules = process_user_rules(f.read())
            rules = generate_rules(index, _split_csv(args.direct), _split_csv(args.proxied), args.prefer_direct)
            print(route_for_url(user_rules, rules, args.url))
    except OSError as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        return 1
    except GeositeError as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        return 2
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
