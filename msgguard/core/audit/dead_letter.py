from __future__ import annotations

import glob
import json
import os
import threading
import time
import uuid
from typing import Any, Dict, Iterable, List, Optional, Tuple

from msgguard.core.audit.hasher import GENESIS, chain_record, verify_record
from msgguard.core.audit.models import AuditLogEntry

_PENDING = ".pending"
_REPLAYED = ".replayed"


class DeadLetterStore:
    """
    Local overflow area for audit batches that could not be persisted.

    Hash-chained JSONL: each line carries prev_hash/hash so tampering or
    truncation is detectable before a replay. fsync per batch.
    """

    def __init__(self, *, path: str, head_path: str):
        self.path = path
        self.head_path = head_path
        self._lock = threading.Lock()
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        os.makedirs(os.path.dirname(head_path) or ".", exist_ok=True)

    def read_head_hash(self) -> str:
        try:
            with open(self.head_path, "r", encoding="utf-8") as f:
                obj = json.load(f)
            return str(obj.get("head_hash") or GENESIS)
        except (OSError, ValueError):
            return GENESIS

    def write_head_hash(self, head_hash: str) -> None:
        tmp = self.head_path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump({"head_hash": head_hash}, f, indent=2, ensure_ascii=False)
            f.write("\n")
        os.replace(tmp, self.head_path)

    def append_batch(self, entries: List[AuditLogEntry], *, reason: str, attempts: int) -> int:
        """
        Appends entries with hash chaining. Returns the number written.
        """
        if not entries:
            return 0
        with self._lock:
            prev = self.read_head_hash()
            with open(self.path, "a", encoding="utf-8") as f:
                for e in entries:
                    rec = chain_record(
                        payload={"entry": e.to_record(), "reason": str(reason)[:500], "attempts": int(attempts), "dead_lettered_at": time.time()},
                        prev_hash=prev,
                    )
                    f.write(json.dumps(rec, ensure_ascii=False) + "\n")
                    prev = str(rec["hash"])
                f.flush()
                os.fsync(f.fileno())
            self.write_head_hash(prev)
        return len(entries)

    def iter_records(self, path: Optional[str] = None) -> Iterable[Dict[str, Any]]:
        path = path or self.path
        if not os.path.exists(path):
            return []

        def _gen():
            with open(path, "r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        obj = json.loads(line)
                    except ValueError:
                        continue
                    if isinstance(obj, dict):
                        yield obj

        return _gen()

    def read_entries(self, path: Optional[str] = None) -> Tuple[List[AuditLogEntry], bool]:
        """
        Returns (entries, chain_ok) for the live file, or for a claimed one.
        """
        out: List[AuditLogEntry] = []
        prev = GENESIS
        ok = True
        for rec in self.iter_records(path):
            if not verify_record(rec, prev_hash=prev):
                ok = False
            prev = str(rec.get("hash") or "")
            entry = rec.get("entry")
            if isinstance(entry, dict):
                out.append(AuditLogEntry.model_validate(entry))
        return out, ok

    def count(self) -> int:
        """
        Entries not yet replayed: the live file plus unfinished claims.
        """
        n = sum(1 for _ in self.iter_records())
        for claimed in self.pending_claims():
            n += sum(1 for _ in self.iter_records(claimed))
        return n

    # ---- replay hand-off ----
    def claim(self) -> str:
        """
        Move the live file to a private .pending name and reset the chain, in
        one step under the append lock. Batches dead-lettered afterwards start
        a new live file. Returns the claimed path, "" when there was nothing.
        """
        with self._lock:
            if not os.path.exists(self.path):
                return ""
            stamp = time.strftime("%Y%m%d_%H%M%S", time.gmtime())
            dst = f"{self.path}.{stamp}.{uuid.uuid4().hex[:8]}{_PENDING}"
            os.replace(self.path, dst)
            self.write_head_hash(GENESIS)
            return dst

    def pending_claims(self) -> List[str]:
        """
        Claimed files not yet finished (oldest stamp first), including ones
        left behind by a failed replay.
        """
        return sorted(glob.glob(glob.escape(self.path) + ".*" + _PENDING))

    def finish(self, claimed: str) -> str:
        """
        Archive a replayed claim under its .replayed name (kept for forensics).
        """
        dst = claimed[: -len(_PENDING)] + _REPLAYED
        os.replace(claimed, dst)
        return dst
