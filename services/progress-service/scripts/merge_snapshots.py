#!/usr/bin/env python3
"""
Merge a local and a remote snapshot of the same record

Reads two JSON documents in the camelCase record shape (lesson progress, learner
profile, or a list of achievements), prints the merged record and any flagged
integrity issues. Useful for replaying sync conflicts reported from devices.

Usage:
    python scripts/merge_snapshots.py local.json remote.json
    python scripts/merge_snapshots.py local.json remote.json --kind profile -o merged.json
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, List, Optional

from pydantic import TypeAdapter, ValidationError

from progress_engine.config import configure_logging
from progress_engine.errors import ProgressEngineError
from progress_engine.logic import sync_merge
from progress_engine.schemas import Achievement, LearnerProfile, LessonAttemptProgress

logger = logging.getLogger(__name__)

KINDS = ("auto", "progress", "profile", "achievements")
ACHIEVEMENT_LIST = TypeAdapter(List[Achievement])


def detect_kind(document: Any) -> str:
    if isinstance(document, list):
        return "achievements"
    if isinstance(document, dict) and ("lessonId" in document or "lesson_id" in document):
        return "progress"
    return "profile"


def merge_documents(local: Any, remote: Any, kind: str = "auto") -> dict:
    """
    Merge two decoded JSON documents

    Returns:
        {"kind", "merged", "issues"} ready for json.dumps
    """
    if kind == "auto":
        kind = detect_kind(local)
        if detect_kind(remote) != kind:
            raise ValueError(f"Snapshots are different record types: {kind} vs {detect_kind(remote)}")

    issues = []
    if kind == "progress":
        result = sync_merge.reconcile_progress(
            LessonAttemptProgress.model_validate(local), LessonAttemptProgress.model_validate(remote)
        )
        merged = result.record.model_dump(mode="json", by_alias=True)
        issues = result.issues
    elif kind == "profile":
        result = sync_merge.reconcile_profile(
            LearnerProfile.model_validate(local), LearnerProfile.model_validate(remote)
        )
        merged = result.record.model_dump(mode="json", by_alias=True)
        issues = result.issues
    elif kind == "achievements":
        records = sync_merge.merge_achievements(
            ACHIEVEMENT_LIST.validate_python(local), ACHIEVEMENT_LIST.validate_python(remote)
        )
        merged = ACHIEVEMENT_LIST.dump_python(records, mode="json", by_alias=True)
    else:
        raise ValueError(f"Unknown record kind: {kind}")

    return {
        "kind": kind,
        "merged": merged,
        "issues": [{"recordKey": i.record_key, "reason": i.reason} for i in issues],
    }


def load_json(path: Path) -> Any:
    with open(path, encoding="utf-8") as f:
        return json.load(f)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Merge local and remote progress snapshots")
    parser.add_argument("local", type=Path, help="Local snapshot (JSON)")
    parser.add_argument("remote", type=Path, help="Remote snapshot (JSON)")
    parser.add_argument("--kind", "-k", choices=KINDS, default="auto", help="Record type (default: detect)")
    parser.add_argument("--output", "-o", type=Path, help="Write merged JSON here instead of stdout")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    args = parser.parse_args(argv)

    configure_logging(args.log_level)

    try:
        report = merge_documents(load_json(args.local), load_json(args.remote), args.kind)
    except (OSError, json.JSONDecodeError, ValidationError, ValueError, ProgressEngineError) as e:
        logger.error(f"Merge failed: {e}")
        return 1

    text = json.dumps(report, indent=2, ensure_ascii=False)
    if args.output:
        args.output.write_text(text + "\n", encoding="utf-8")
        logger.info(f"Merged {report['kind']} written to {args.output}")
    else:
        print(text)

    if report["issues"]:
        logger.warning(f"{len(report['issues'])} issue(s) flagged during merge")
    return 0


if __name__ == "__main__":
    sys.exit(main())
