import fnmatch
import logging
import tempfile
import time
import zipfile
from pathlib import Path

DEFAULT_EXCLUDE_PATTERNS = [
    ".git/*",
    ".github/*",
    "node_modules/*",
    "*/node_modules/*",
    ".DS_Store",
    "*.log",
    ".gitignore",
    ".gitattributes",
]


class ArchiveError(Exception):
    pass


def _is_excluded(rel: str, excludes: list[str]) -> bool:
    name = rel.rsplit("/", 1)[-1]
    return any(fnmatch.fnmatch(rel, ex) or fnmatch.fnmatch(name, ex) for ex in excludes)


def collect_files(root: Path, excludes: list[str]) -> dict[str, Path]:
    files: dict[str, Path] = {}
    for file in sorted(root.rglob("*")):
        if not file.is_file():
            continue
        rel = file.relative_to(root).as_posix()
        if _is_excluded(rel, excludes):
            continue
        files[rel] = file
    return files


def build_archive(
    root: Path, excludes: list[str], out_dir: Path | None = None
) -> tuple[Path, str]:
    """Zip ``root`` into a fresh ``ci-upload-<ms>.zip`` and return its path and name."""
    if not root.is_dir():
        raise ArchiveError(f"workspace not found: {root}")

    archive_name = f"ci-upload-{int(time.time() * 1000)}.zip"
    out_path = (out_dir or Path(tempfile.gettempdir())) / archive_name
    files = collect_files(root, excludes)
    try:
        with zipfile.ZipFile(
            out_path, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=9
        ) as zf:
            for rel, path in files.items():
                zf.write(path, rel)
    except OSError as exc:
        raise ArchiveError(f"failed to write {out_path}: {exc}") from exc

    logging.info("Archived %s files into %s", len(files), out_path)
    return out_path, archive_name
