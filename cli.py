from __future__ import annotations

import argparse
import json
import os
import sys

import requests


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _parse_group(raw: str) -> dict:
    """``3`` or ``hot:3`` -> {"node_count": 3, "name": "hot"}."""
    name, _, count = raw.rpartition(":")
    group: dict = {"node_count": int(count)}
    if name:
        group["name"] = name
    return group


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Search Cluster Reconciler CLI")
    p.add_argument("--api", default="http://localhost:8000", help="API base URL")
    p.add_argument("--user", default=os.getenv("SCR_ADMIN_USER", "admin"))
    p.add_argument("--password", default=os.getenv("SCR_ADMIN_PASSWORD", "admin"))
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("clusters", help="List clusters")

    s_get = sub.add_parser("get", help="Show one cluster")
    s_get.add_argument("cluster", help="[namespace/]name")

    s_apply = sub.add_parser("apply", help="Create or update a cluster")
    s_apply.add_argument("cluster", help="[namespace/]name")
    s_apply.add_argument("--version", required=True)
    s_apply.add_argument(
        "--group",
        action="append",
        default=[],
        metavar="[NAME:]COUNT",
        help="Topology group; repeat for more groups (default: one group of 1 node)",
    )
    s_apply.add_argument("--set-vm-max-map-count", action="store_true", help="Raise vm.max_map_count on worker hosts")
    s_apply.add_argument("--file", help="JSON request body; overrides --version/--group")

    s_del = sub.add_parser("delete", help="Delete a cluster (owned resources are cascaded)")
    s_del.add_argument("cluster", help="[namespace/]name")

    s_res = sub.add_parser("resources", help="Show resources owned by a cluster")
    s_res.add_argument("cluster", help="[namespace/]name")

    s_kill = sub.add_parser("kill", help="Delete one owned resource to exercise self-healing")
    s_kill.add_argument("kind", choices=["pods", "services", "jobs"])
    s_kill.add_argument("name")
    s_kill.add_argument("--namespace", default="default")

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)

    args = p.parse_args(argv)

    base = args.api.rstrip("/")
    auth = (args.user, args.password)

    def cluster_path(raw: str) -> str:
        namespace, _, name = raw.partition("/")
        if not name:
            namespace, name = "default", namespace
        return f"{base}/clusters/{namespace}/{name}"

    if args.cmd == "clusters":
        _print(requests.get(f"{base}/clusters", timeout=10).json())
        return 0

    if args.cmd == "get":
        r = requests.get(cluster_path(args.cluster), timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "apply":
        if args.file:
            with open(args.file, encoding="utf-8") as f:
                payload = json.load(f)
        else:
            payload = {
                "version": args.version,
                "set_vm_max_map_count": args.set_vm_max_map_count,
                "topologies": [_parse_group(g) for g in args.group] or [{"node_count": 1}],
            }
        r = requests.put(cluster_path(args.cluster), json=payload, auth=auth, timeout=30)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "delete":
        r = requests.delete(cluster_path(args.cluster), auth=auth, timeout=30)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "resources":
        r = requests.get(f"{cluster_path(args.cluster)}/resources", timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "kill":
        r = requests.delete(f"{base}/resources/{args.kind}/{args.namespace}/{args.name}", auth=auth, timeout=30)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "events":
        _print(requests.get(f"{base}/events", params={"limit": args.limit}, timeout=10).json())
        return 0

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
