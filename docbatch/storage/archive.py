"""ZIP archive assembly for generated documents."""

import os
import zipfile
from typing import Iterable, List, Tuple

from docbatch.errors import ArchiveError


def archive_entry_name(row_number: int, path: str) -> str:
    """Deterministic name inside the archive, e.g. ``document_0007.pdf``."""
    ext = os.path.splitext(path)[1].lstrip(".") or "bin"
    return f"document_{row_number:04d}.{ext}"


def build_archive(archive_path: str, entries: Iterable[Tuple[int, str]]) -> List[str]:
    """Write ``(row_number, file_path)`` pairs to a ZIP in row order.

    Returns the entry names written. Any failure removes the partial file
    and raises ArchiveError.
    """
    ordered = sorted(entries, key=lambda item: (item[0], item[1]))
    if not ordered:
        raise ArchiveError("no documents to archive")

    tmp_path = f"{archive_path}.partial"
    names: List[str] = []
    try:
        with zipfile.ZipFile(tmp_path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            for row_number, path in ordered:
                name = archive_entry_name(row_number, path)
                zf.write(path, arcname=name)
                names.append(name)
        os.replace(tmp_path, archive_path)
    except (OSError, zipfile.BadZipFile) as exc:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise ArchiveError(f"archive creation failed: {exc}") from exc
    return names


def merge_into_archive(archive_path: str, entries: Iterable[Tuple[int, str]]) -> List[str]:
    """Add ``(row_number, file_path)`` pairs to an existing archive.

    Members already present are kept unless a new entry has the same name.
    The result is rewritten in entry-name order, which is row order.
    """
    added = {archive_entry_name(row, path): path for row, path in entries}
    if not added:
        raise ArchiveError("no documents to archive")

    tmp_path = f"{archive_path}.partial"
    try:
        with zipfile.ZipFile(archive_path) as existing:
            kept = [n for n in existing.namelist() if n not in added]
            names = sorted(kept + list(added))
            with zipfile.ZipFile(tmp_path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
                for name in names:
                    if name in added:
                        zf.write(added[name], arcname=name)
                    else:
                        zf.writestr(name, existing.read(name))
        os.replace(tmp_path, archive_path)
    except (OSError, zipfile.BadZipFile) as exc:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise ArchiveError(f"archive update failed: {exc}") from exc
    return names
