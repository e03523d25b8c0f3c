from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

from .aws_boto3 import S3Store
from .config import load_config
from .local_store import LocalStore
from .logging_utils import setup_logging
from .pipeline import run_pipeline


def _read_event(path: str) -> dict:
    if path == "-":
        return json.load(sys.stdin)
    p = Path(path)
    try:
        return json.loads(p.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise SystemExit(f"Event file not found: {p}")
    except json.JSONDecodeError as e:
        raise SystemExit(f"Event file is not valid JSON: {p}\n  {e}")


def sample_event(*, bucket: str, key: str, size: int) -> dict:
    """An S3 ObjectCreated:Put notification for one object, as Lambda receives it."""
    return {
        "Records": [
            {
                "eventVersion": "2.1",
                "eventSource": "aws:s3",
                "awsRegion": "us-east-1",
                "eventName": "ObjectCreated:Put",
                "s3": {
                    "s3SchemaVersion": "1.0",
                    "bucket": {"name": bucket, "arn": f"arn:aws:s3:::{bucket}"},
                    "object": {"key": key, "size": size},
                },
            }
        ]
    }


def cmd_invoke(args: argparse.Namespace) -> int:
    try:
        cfg = load_config(
            allowed_source_buckets=args.allowed_buckets,
            bucket_mappings=args.bucket_mappings,
            duplicate_action=args.duplicate_action,
            check_duplicates=False if args.no_duplicate_check else None,
            detailed_logging=True if args.verbose else None,
        )
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2

    logger = setup_logging(verbose=cfg.detailed_logging)
    event = _read_event(args.event)

    if args.local_root:
        store = LocalStore(Path(args.local_root).expanduser().resolve())
        logger.info(f"Using local store: {store.root}")
    else:
        store = S3Store()

    result = run_pipeline(event, cfg=cfg, store=store, logger=logger)
    print(json.dumps(result, indent=2))
    return 1 if result.get("status") == "error" else 0


def cmd_sample_event(args: argparse.Namespace) -> int:
    print(json.dumps(sample_event(bucket=args.bucket, key=args.key, size=args.size), indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="darkroom", description="darkroom photo ingestion")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_inv = sub.add_parser("invoke", help="Process one storage notification locally and print the result")
    p_inv.add_argument("event", help="Path to the notification JSON ('-' reads stdin)")
    p_inv.add_argument(
        "--local-root",
        default=None,
        help="Use a directory as the object store (<root>/<bucket>/<key>) instead of S3",
    )
    p_inv.add_argument("--allowed-buckets", default=None, help="Comma-separated source buckets (or DARKROOM_ALLOWED_SOURCE_BUCKETS)")
    p_inv.add_argument("--bucket-mappings", default=None, help='Source to destination JSON, e.g. {"ingress": "processed"}')
    p_inv.add_argument("--duplicate-action", default=None, help="delete, move, keep or replace (default: replace)")
    p_inv.add_argument("--no-duplicate-check", action="store_true", help="Skip duplicate detection")
    p_inv.add_argument("--verbose", action="store_true", help="Detailed logging (DEBUG level, tracebacks in errors)")
    p_inv.set_defaults(func=cmd_invoke)

    p_sample = sub.add_parser("sample-event", help="Print an S3 notification for testing")
    p_sample.add_argument("--bucket", required=True, help="Source bucket name")
    p_sample.add_argument("--key", required=True, help="Object key")
    p_sample.add_argument("--size", type=int, default=1024 * 1024, help="Declared object size in bytes (default: 1MiB)")
    p_sample.set_defaults(func=cmd_sample_event)

    return p


def main(argv: list[str] | None = None) -> None:
    argv = argv if argv is not None else sys.argv[1:]
    parser = build_parser()
    args = parser.parse_args(argv)
    rc = args.func(args)
    raise SystemExit(rc)

