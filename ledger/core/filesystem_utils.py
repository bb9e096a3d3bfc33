"""Local file helpers: atomic text writes and the export directory listing."""

from datetime import datetime
from pathlib import Path

_SIZE_UNITS = ("B", "KB", "MB", "GB", "TB")


def atomic_write_text(path, text):
    """Write ``text`` through a sibling ``.tmp`` file so readers never see half a file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    staging = path.with_name(path.name + ".tmp")
    staging.write_text(str(text), encoding="utf-8")
    staging.replace(path)


def format_file_size(num_bytes):
    value = float(max(0, num_bytes or 0))
    unit = 0
    while value >= 1024 and unit < len(_SIZE_UNITS) - 1:
        value /= 1024
        unit += 1
    return f"{int(value)} B" if unit == 0 else f"{value:.1f} {_SIZE_UNITS[unit]}"


def _describe_snapshot(path, display_tz):
    stat = path.stat()
    modified = datetime.fromtimestamp(stat.st_mtime, tz=display_tz)
    return {
        "name": path.name,
        "size_bytes": stat.st_size,
        "size_text": format_file_size(stat.st_size),
        "modified": modified.isoformat(timespec="seconds"),
        "modified_text": modified.strftime("%b %d, %Y %I:%M %p"),
    }


def list_snapshot_files(base_dir, pattern, display_tz):
    """Snapshot files in ``base_dir`` matching ``pattern``, newest first.

    A missing directory lists as empty. Files that vanish mid-scan are skipped.
    """
    base_dir = Path(base_dir)
    if not base_dir.is_dir():
        return []
    items = []
    for path in base_dir.glob(pattern):
        try:
            if path.is_file():
                items.append(_describe_snapshot(path, display_tz))
        except OSError:
            continue
    items.sort(key=lambda item: item["modified"], reverse=True)
    return items


def safe_filename_in_dir(base_dir, filename):
    """Return ``filename`` if it names an existing file directly inside ``base_dir``, else None."""
    if not filename or Path(filename).name != filename:
        return None
    try:
        base = Path(base_dir).resolve()
        target = (base / filename).resolve()
    except OSError:
        return None
    if target.parent != base or not target.is_file():
        return None
    return filename
