"""File-based JSON storage for safety cases."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

from core.applier import normalize_document
from core.models import DOCUMENT_KINDS, PHASES, CaseDocument, empty_document
from tools.file_utils import ensure_directory

logger = logging.getLogger(__name__)


def _timestamp() -> str:
    """Get current timestamp in ISO format."""
    return datetime.utcnow().isoformat() + "Z"


class CaseStore:
    """File-based JSON storage for case documents, one file per case."""

    def __init__(self, data_dir: str = "data/cases"):
        self.data_dir = Path(data_dir)
        ensure_directory(self.data_dir)
        self.index_file = self.data_dir / "index.json"
        self._ensure_index()

    def _ensure_index(self):
        """Ensure index.json exists."""
        if not self.index_file.exists():
            with open(self.index_file, 'w') as f:
                json.dump({"cases": []}, f, indent=2)

    def _case_file(self, case_id: str) -> Path:
        """Get path to case JSON file."""
        return self.data_dir / f"{case_id}.json"

    def _write(self, record: Dict[str, Any]) -> None:
        path = self._case_file(record["id"])
        with path.open("w", encoding="utf-8") as f:
            json.dump(record, f, indent=2)
        self._update_index(record)

    def _update_index(self, record: Dict[str, Any]):
        """Update the index.json file."""
        with open(self.index_file, 'r') as f:
            index = json.load(f)

        cases = [c for c in index["cases"] if c["id"] != record["id"]]
        document = record.get("document", {})
        cases.append({
            "id": record["id"],
            "kind": document.get("kind"),
            "title": document.get("title", "Untitled"),
            "phase": document.get("phase"),
            "created_at": record.get("created_at"),
            "updated_at": record.get("updated_at"),
        })
        index["cases"] = sorted(cases, key=lambda x: x.get("updated_at") or "", reverse=True)

        with open(self.index_file, 'w') as f:
            json.dump(index, f, indent=2)

    def list_cases(self) -> List[Dict[str, Any]]:
        """List case summaries, most recently updated first."""
        with open(self.index_file, 'r') as f:
            return json.load(f).get("cases", [])

    def create_case(
        self,
        kind: str,
        title: str,
        phase: Optional[str] = None,
        document: Optional[CaseDocument] = None,
    ) -> Dict[str, Any]:
        """Create a case, optionally seeded with a prepared document."""
        if kind not in DOCUMENT_KINDS:
            raise ValueError(f"kind must be one of {', '.join(DOCUMENT_KINDS)}")
        if phase is not None and phase not in PHASES[kind]:
            raise ValueError(f"phase must be one of {', '.join(PHASES[kind])}")

        case_id = uuid4().hex
        if document is None:
            document = empty_document(case_id, kind, title, phase)
        else:
            document = dict(document)  # type: ignore[assignment]
            document.update({"id": case_id, "kind": kind, "title": title})
            document["phase"] = phase or document.get("phase") or PHASES[kind][0]

        now = _timestamp()
        record = {
            "id": case_id,
            "created_at": now,
            "updated_at": now,
            "document": normalize_document(document),
        }
        self._write(record)
        logger.info(f"Created {kind} case {case_id}")
        return record

    def load(self, case_id: str) -> Optional[Dict[str, Any]]:
        """Load a case record by id."""
        path = self._case_file(case_id)
        if not path.exists():
            return None
        with path.open("r", encoding="utf-8") as f:
            return json.load(f)

    def load_document(self, case_id: str) -> Optional[CaseDocument]:
        record = self.load(case_id)
        return record.get("document") if record else None

    def save_document(self, case_id: str, document: CaseDocument) -> Dict[str, Any]:
        """Replace the stored document of an existing case."""
        record = self.load(case_id)
        if record is None:
            raise KeyError(case_id)
        record["document"] = document
        record["updated_at"] = _timestamp()
        self._write(record)
        logger.info(f"Saved case {case_id}")
        return record

    def delete(self, case_id: str) -> bool:
        """Delete a case file and its index entry."""
        path = self._case_file(case_id)
        deleted = False
        if path.exists():
            path.unlink()
            deleted = True

        with open(self.index_file, 'r') as f:
            index = json.load(f)
        index["cases"] = [c for c in index["cases"] if c["id"] != case_id]
        with open(self.index_file, 'w') as f:
            json.dump(index, f, indent=2)

        return deleted
