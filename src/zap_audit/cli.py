from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Callable

from zap_audit.core.engine import list_automations, run_audit
from zap_audit.core.errors import AuditResultError, MalformedArchive
from zap_audit.core.pricing import PRICING_TIERS, normalize_plan
from zap_audit.core.reaudit import build_reaudit_metadata, write_reaudit_metadata
from zap_audit.core.report import validate_audit_result, write_audit_result
from zap_audit.core.thresholds import load_thresholds
from zap_audit.core.utils import json_dumps, now_iso, read_json


def _make_logger(log_file: str | None) -> Callable[[str], None]:
    log_path = Path(log_file) if log_file else None
    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)

    def _log(msg: str) -> None:
        line = f"{now_iso()} {msg}"
        print(line, file=sys.stderr)
        if log_path is not None:
            with log_path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")

    return _log


def _read_archive(file_path: str) -> bytes:
    path = Path(file_path)
    if not path.exists():
        raise SystemExit(f"Archive not found: {file_path}")
    return path.read_bytes()


def cmd_audit(
    file_path: str,
    plan: str | None,
    usage: int | None,
    zap_ids: list[str] | None,
    top: int | None,
    out_path: str | None,
    reaudit_out: str | None,
    thresholds_path: str | None,
    log_file: str | None,
) -> None:
    data = _read_archive(file_path)
    logger = _make_logger(log_file)
    try:
        thresholds = load_thresholds(Path(thresholds_path) if thresholds_path else None)
        result = run_audit(
            data,
            plan=plan,
            usage=usage,
            selected_ids=zap_ids or None,
            thresholds=thresholds,
            logger=logger,
            top=top,
        )
    except MalformedArchive as exc:
        raise SystemExit(f"Malformed archive: {exc}")
    except AuditResultError as exc:
        raise SystemExit(f"Audit result failed validation: {exc}")
    except ValueError as exc:
        raise SystemExit(str(exc))

    if out_path:
        write_audit_result(Path(out_path), result)
        print(out_path)
    else:
        print(json_dumps(result.to_dict()))
    if reaudit_out:
        write_reaudit_metadata(Path(reaudit_out), build_reaudit_metadata(result, data))


def cmd_list(file_path: str) -> None:
    try:
        summaries = list_automations(_read_archive(file_path))
    except MalformedArchive as exc:
        raise SystemExit(f"Malformed archive: {exc}")
    print(json_dumps([summary.to_dict() for summary in summaries]))


def cmd_validate(result_path: str) -> None:
    try:
        validate_audit_result(read_json(Path(result_path)))
    except AuditResultError as exc:
        print(str(exc))
        raise SystemExit(1)
    print("OK")


def cmd_tiers(plan: str | None) -> None:
    try:
        key = normalize_plan(plan)
    except ValueError as exc:
        raise SystemExit(str(exc))
    for capacity, price in PRICING_TIERS[key]:
        print(f"{capacity:>10,} tasks  ${price:>9,.2f}  ${price / capacity:.5f}/task")


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="zap-audit")
    sub = parser.add_subparsers(dest="command", required=True)

    audit_parser = sub.add_parser("audit")
    audit_parser.add_argument("--file", required=True)
    audit_parser.add_argument("--plan", choices=sorted(PRICING_TIERS))
    audit_parser.add_argument("--usage", type=int)
    audit_parser.add_argument("--zap-id", action="append", dest="zap_ids")
    audit_parser.add_argument("--top", type=int)
    audit_parser.add_argument("--out")
    audit_parser.add_argument("--reaudit-out")
    audit_parser.add_argument("--thresholds")
    audit_parser.add_argument("--log-file")

    list_parser = sub.add_parser("list")
    list_parser.add_argument("--file", required=True)

    validate_parser = sub.add_parser("validate")
    validate_parser.add_argument("--result", required=True)

    tiers_parser = sub.add_parser("tiers")
    tiers_parser.add_argument("--plan", choices=sorted(PRICING_TIERS))

    args = parser.parse_args(argv)

    if args.command == "audit":
        cmd_audit(
            args.file,
            args.plan,
            args.usage,
            args.zap_ids,
            args.top,
            args.out,
            args.reaudit_out,
            args.thresholds,
            args.log_file,
        )
    elif args.command == "list":
        cmd_list(args.file)
    elif args.command == "validate":
        cmd_validate(args.result)
    elif args.command == "tiers":
        cmd_tiers(args.plan)
    else:
        raise SystemExit(2)


if __name__ == "__main__":
    main()
