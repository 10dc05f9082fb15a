"""Export and restore of the images table (JSON or SQL files)."""
from __future__ import annotations

import json
import logging
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Dict, List

from db.batch_store import BatchImageStore

logger = logging.getLogger(__name__)

EXPORT_COLUMNS = (
    "filename",
    "path",
    "upload_time",
    "file_size",
    "storage",
    "format",
    "url",
    "html_code",
    "markdown_code",
    "category_id",
    "created_at",
)
IMPORT_CHUNK_SIZE = 100


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"not JSON serializable: {type(value).__name__}")


def _sql_literal(value: Any) -> str:
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, datetime):
        value = value.isoformat(sep=" ")
    elif isinstance(value, date):
        value = value.isoformat()
    return "'" + str(value).replace("'", "''") + "'"


def split_sql_statements(script: str) -> List[str]:
    """Split on ``;`` outside single-quoted literals, dropping ``--`` comments.

    Literals may span lines; a doubled quote inside one is an escaped quote.
    """
    statements: List[str] = []
    buf: List[str] = []
    in_quote = False
    i, n = 0, len(script)
    while i < n:
        ch = script[i]
        if in_quote:
            buf.append(ch)
            if ch == "'":
                in_quote = False
        elif ch == "'":
            in_quote = True
            buf.append(ch)
        elif script.startswith("--", i):
            end = script.find("\n", i)
            i = n if end == -1 else end
            continue
        elif ch == ";":
            statements.append("".join(buf).strip())
            buf = []
        else:
            buf.append(ch)
        i += 1
    if in_quote:
        raise ValueError("unterminated string literal in SQL backup")
    statements.append("".join(buf).strip())
    return [s for s in statements if s]


class BackupService:
    """Writes backups under ``backup_dir`` and restores them through the batch store."""

    def __init__(self, store: BatchImageStore, backup_dir: str | Path = "backups") -> None:
        self.store = store
        self.backup_dir = Path(backup_dir)

    def _target(self, suffix: str) -> Path:
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now(tz=timezone.utc).strftime("%Y%m%dT%H%M%S%f")
        return self.backup_dir / f"images-{stamp}.{suffix}"

    def locate(self, file_path: str | Path) -> Path:
        """Resolve a restore source; only files under ``backup_dir`` are accepted.

        Bare names are looked up in ``backup_dir``. Raises ``ValueError`` for
        paths outside it and ``FileNotFoundError`` for missing files.
        """
        root = self.backup_dir.resolve()
        given = Path(file_path)
        inside = [p for p in (given.resolve(), (self.backup_dir / given).resolve()) if p.is_relative_to(root)]
        if not inside:
            raise ValueError(f"backup file must be inside the backup directory: {file_path}")
        for path in inside:
            if path.is_file():
                return path
        raise FileNotFoundError(f"backup file not found: {file_path}")

    def _rows(self) -> List[Dict[str, Any]]:
        return [{k: row[k] for k in EXPORT_COLUMNS} for row in self.store.export_rows()]

    def export_json(self) -> Dict[str, Any]:
        rows = self._rows()
        path = self._target("json")
        path.write_text(json.dumps({"images": rows}, default=_json_default, indent=2), encoding="utf-8")
        logger.info("json backup written: %s (%s rows)", path, len(rows))
        return {"path": str(path), "count": len(rows), "message": f"exported {len(rows)} images"}

    def export_sql(self) -> Dict[str, Any]:
        rows = self._rows()
        path = self._target("sql")
        cols = ", ".join(EXPORT_COLUMNS)
        lines = [
            f"INSERT INTO images ({cols}) VALUES ({', '.join(_sql_literal(row[c]) for c in EXPORT_COLUMNS)});"
            for row in rows
        ]
        path.write_text("\n".join(lines) + ("\n" if lines else ""), encoding="utf-8")
        logger.info("sql backup written: %s (%s rows)", path, len(rows))
        return {"path": str(path), "count": len(rows), "message": f"exported {len(rows)} images"}

    def import_json(self, file_path: str | Path) -> Dict[str, Any]:
        """Restore in chunks; a failing chunk is reported, the rest still load."""
        doc = json.loads(Path(file_path).read_text(encoding="utf-8"))
        rows = doc.get("images", []) if isinstance(doc, dict) else doc
        summary = self.store.bulk_import(rows, chunk_size=IMPORT_CHUNK_SIZE)
        failed = [b for b in summary["batches"] if not b["success"]]
        message = f"restored {summary['totalInserted']}/{summary['totalRecords']} images"
        if failed:
            message += f", {len(failed)} chunk(s) failed"
        return {"imported": summary["totalInserted"], "message": message, "batches": summary["batches"]}

    def import_sql(self, file_path: str | Path) -> Dict[str, Any]:
        """Restore a SQL backup as one transaction."""
        statements = split_sql_statements(Path(file_path).read_text(encoding="utf-8"))
        with self.store.db.session_scope() as session:
            conn = session.connection()
            for stmt in statements:
                # raw driver SQL: ":word" inside literals is not a bind parameter
                conn.exec_driver_sql(stmt)
        return {"imported": len(statements), "message": f"restored {len(statements)} images"}
