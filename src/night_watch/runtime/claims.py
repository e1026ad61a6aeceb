"""Advisory per-item claim markers and orphan reconciliation."""

from __future__ import annotations

import json
import logging
import os
import socket
import time
import uuid
from pathlib import Path

from night_watch.models import ClaimInfo, LockProbe, ReconcileResult
from night_watch.runtime.locks import LockManager

logger = logging.getLogger(__name__)

CLAIM_SUFFIX = ".md.claim"


def claim_path(prd_dir: Path, item_name: str) -> Path:
    return prd_dir / f"{item_name}{CLAIM_SUFFIX}"


def claim(prd_dir: Path, item_name: str) -> bool:
    """Create the claim marker; ``False`` means another worker already holds it."""

    path = claim_path(prd_dir, item_name)
    payload = json.dumps(
        {"timestamp": int(time.time()), "hostname": socket.gethostname(), "pid": os.getpid()},
    )
    temp_path = path.with_name(f".{path.name}.{os.getpid()}.{uuid.uuid4().hex}.tmp")
    with temp_path.open("x", encoding="utf-8") as handle:
        handle.write(payload)
    try:
        os.link(temp_path, path)
    except FileExistsError:
        return False
    finally:
        temp_path.unlink(missing_ok=True)
    logger.debug("Claimed %s", path)
    return True


def clear(prd_dir: Path, item_name: str) -> bool:
    try:
        claim_path(prd_dir, item_name).unlink()
    except FileNotFoundError:
        return False
    return True


def list_claims(prd_dir: Path) -> list[str]:
    """Names of items with a claim marker, sorted."""

    if not prd_dir.is_dir():
        return []
    return sorted(
        entry.name[: -len(CLAIM_SUFFIX)]
        for entry in prd_dir.iterdir()
        if entry.name.endswith(CLAIM_SUFFIX) and not entry.name.startswith(".")
    )


def read_claim(prd_dir: Path, item_name: str) -> ClaimInfo | None:
    """Read the advisory payload; malformed content yields empty fields."""

    path = claim_path(prd_dir, item_name)
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    info = ClaimInfo(item_name=item_name, path=path, timestamp=None, hostname=None, pid=None)
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Malformed claim payload in %s", path)
        return info
    if not isinstance(payload, dict):
        logger.warning("Malformed claim payload in %s", path)
        return info
    if isinstance(payload.get("timestamp"), int):
        info.timestamp = payload["timestamp"]
    if isinstance(payload.get("hostname"), str):
        info.hostname = payload["hostname"]
    if isinstance(payload.get("pid"), int):
        info.pid = payload["pid"]
    return info


def reconcile(prd_dir: Path, locks: LockManager, executor_lock: Path) -> ReconcileResult:
    """Remove claims that no live executor can own.

    Claims are deleted only while the executor lock is confirmed absent or
    dead. Each claim is moved aside first and the lock is probed again; if an
    executor appeared in the meantime, or the claim was rewritten, it is put
    back untouched.
    """

    names = list_claims(prd_dir)
    probe = locks.probe(executor_lock)
    result = ReconcileResult(lock_probe=probe)
    if not names:
        return result
    if probe not in {LockProbe.ABSENT, LockProbe.DEAD}:
        result.kept.extend(names)
        return result

    for index, name in enumerate(names):
        path = claim_path(prd_dir, name)
        try:
            expected = path.read_bytes()
        except FileNotFoundError:
            continue

        probe = locks.probe(executor_lock)
        if probe not in {LockProbe.ABSENT, LockProbe.DEAD}:
            result.lock_probe = probe
            result.kept.extend(names[index:])
            return result

        tomb = path.with_name(f".{path.name}.{os.getpid()}.{uuid.uuid4().hex}.orphan")
        try:
            os.rename(path, tomb)
        except FileNotFoundError:
            continue

        probe = locks.probe(executor_lock)
        try:
            moved = tomb.read_bytes()
        except OSError:
            moved = None
        if probe in {LockProbe.ABSENT, LockProbe.DEAD} and moved == expected:
            tomb.unlink(missing_ok=True)
            result.removed.append(name)
            logger.info("Removed orphaned claim %s", path)
            continue

        _restore(tomb, path)
        result.lock_probe = probe
        result.kept.extend(names[index:])
        return result
    return result


def _restore(tomb: Path, path: Path) -> None:
    try:
        os.link(tomb, path)
    except FileExistsError:
        logger.debug("Claim %s was recreated meanwhile, dropping moved copy", path)
    finally:
        tomb.unlink(missing_ok=True)
