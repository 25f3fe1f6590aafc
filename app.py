from __future__ import annotations

import argparse
import json
import os
import sys

import uvicorn

from msgguard.core.config import ConfigFsPaths, ConfigManager
from msgguard.core.errors import ConfigError
from msgguard.core.logger import setup_logging
from msgguard.core.ops_log import OpsLogger
from msgguard.core.pipeline import build_pipeline
from msgguard.web.api import create_app


def _load(root: str, logger, ops):  # noqa: ANN001
    fs = ConfigFsPaths(root)
    try:
        cfg = ConfigManager(fs=fs, logger=logger, ops=ops).load_all()
    except ConfigError as e:
        logger.error(f"Configuration invalid: {e.user_message} {e.context.get('detail', '')}")
        sys.exit(2)
    return fs, cfg


def cmd_serve(args, logger, ops) -> int:  # noqa: ANN001
    fs, cfg = _load(args.root, logger, ops)
    pipeline = build_pipeline(cfg, fs=fs, logger=logger, ops=ops)
    app = create_app(
        pipeline,
        logger=logger,
        allowed_origins=list(cfg.web.allowed_origins),
        max_request_bytes=int(cfg.web.max_request_bytes),
    )
    host = args.host or cfg.web.bind_host
    port = int(args.port or cfg.web.port)
    logger.info(f"Serving on http://{host}:{port}")
    try:
        uvicorn.run(app, host=host, port=port, log_level="info")
    finally:
        pipeline.stop()
    return 0


def cmd_retention_run(args, logger, ops) -> int:  # noqa: ANN001
    fs, cfg = _load(args.root, logger, ops)
    pipeline = build_pipeline(cfg, fs=fs, logger=logger, ops=ops, start_background=False)
    try:
        reconciled = pipeline.reconcile()
        summary = pipeline.retention.run_once()
        pipeline.audit.flush()
    finally:
        pipeline.stop()
    print(json.dumps({"reconciled": reconciled, "retention": summary}, indent=2, sort_keys=True))
    return 0 if summary.get("ok", True) else 1


def cmd_replay_dead_letter(args, logger, ops) -> int:  # noqa: ANN001
    fs, cfg = _load(args.root, logger, ops)
    pipeline = build_pipeline(cfg, fs=fs, logger=logger, ops=ops, start_background=False)
    try:
        out = pipeline.audit.replay_dead_letter()
    finally:
        pipeline.stop()
    print(json.dumps(out, indent=2, sort_keys=True))
    return 0 if out.get("chain_ok", True) else 1


def cmd_print_config(args, logger, ops) -> int:  # noqa: ANN001
    _fs, cfg = _load(args.root, logger, ops)
    print(json.dumps(cfg.model_dump(mode="json"), indent=2, sort_keys=True))
    return 0


def main() -> None:
    ap = argparse.ArgumentParser(description="msgguard message compliance and moderation pipeline")
    ap.add_argument("--root", default=".", help="Directory holding config/, data/ and secure/.")
    sub = ap.add_subparsers(dest="command", required=True)

    sp = sub.add_parser("serve", help="Run the HTTP API with the audit flusher and retention loop.")
    sp.add_argument("--host", default=None, help="Bind host (default from config/web.json).")
    sp.add_argument("--port", type=int, default=None, help="Bind port (default from config/web.json).")
    sp.set_defaults(func=cmd_serve)

    sub.add_parser("retention-run", help="Reconcile recent messages and run one retention pass.").set_defaults(func=cmd_retention_run)
    sub.add_parser("replay-dead-letter", help="Write dead-lettered audit entries back to the audit store.").set_defaults(func=cmd_replay_dead_letter)
    sub.add_parser("print-config", help="Print the validated configuration.").set_defaults(func=cmd_print_config)
    args = ap.parse_args()

    logger = setup_logging(os.path.join(args.root, "logs"))
    ops = OpsLogger(path=os.path.join(args.root, "logs", "ops.jsonl"))
    sys.exit(args.func(args, logger, ops))


if __name__ == "__main__":
    main()
