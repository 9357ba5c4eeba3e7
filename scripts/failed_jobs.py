"""List failed deposit jobs or hand one back to the queue."""

import argparse
import json

import httpx


def main() -> None:
    """CLI entrypoint for manual reconciliation of failed jobs."""

    parser = argparse.ArgumentParser(description="Inspect and retry failed deposit jobs.")
    parser.add_argument("--deposits-url", default="http://localhost:8000")
    parser.add_argument("--api-key", default="local-dev-key")
    sub = parser.add_subparsers(dest="command", required=True)
    list_cmd = sub.add_parser("list", help="print failed jobs, newest first")
    list_cmd.add_argument("--limit", type=int, default=50)
    list_cmd.add_argument("--job-type", default=None, choices=["monitor-batch", "reconcile"])
    retry_cmd = sub.add_parser("retry", help="reset one failed job to PENDING")
    retry_cmd.add_argument("job_id")
    args = parser.parse_args()

    headers = {"X-API-KEY": args.api_key}
    if args.command == "list":
        params = {"limit": args.limit}
        if args.job_type:
            params["job_type"] = args.job_type
        resp = httpx.get(f"{args.deposits_url}/admin/jobs/failed", params=params, headers=headers, timeout=10.0)
    else:
        resp = httpx.post(f"{args.deposits_url}/admin/jobs/{args.job_id}/retry", headers=headers, timeout=10.0)
    resp.raise_for_status()
    print(json.dumps(resp.json(), indent=2))


if __name__ == "__main__":
    main()
