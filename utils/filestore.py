"""File stores the pipeline reads from and writes patched files to."""

import logging
import os

logger = logging.getLogger(__name__)

IGNORED_DIRS = {".git", "node_modules", "__pycache__", ".venv", "venv", "dist", "build"}


class MemoryFileStore:
    """Dict-backed store for tests and dry runs."""

    def __init__(self, files=None):
        self.files = dict(files or {})

    def read(self, path):
        return self.files.get(path)

    def write(self, path, content):
        self.files[path] = content

    def delete(self, path):
        self.files.pop(path, None)

    def list(self):
        return sorted(self.files)


class DirectoryFileStore:
    """Reads and writes files under a root directory."""

    def __init__(self, root):
        self.root = os.path.realpath(root)

    def _resolve(self, path):
        resolved = os.path.realpath(os.path.join(self.root, path))
        if not resolved.startswith(self.root + os.sep):
            raise ValueError(f"Path escapes root directory: {path}")
        return resolved

    def read(self, path):
        resolved = self._resolve(path)
        if not os.path.isfile(resolved):
            return None
        with open(resolved, encoding="utf-8", errors="replace") as f:
            return f.read()

    def write(self, path, content):
        resolved = self._resolve(path)
        os.makedirs(os.path.dirname(resolved), exist_ok=True)
        with open(resolved, "w", encoding="utf-8") as f:
            f.write(content)
        logger.info("Wrote %s (%d bytes)", path, len(content))

    def delete(self, path):
        resolved = self._resolve(path)
        if os.path.isfile(resolved):
            os.remove(resolved)
            logger.info("Deleted %s", path)

    def list(self):
        paths = []
        for dirpath, dirnames, filenames in os.walk(self.root):
            dirnames[:] = sorted(d for d in dirnames if d not in IGNORED_DIRS and not d.startswith("."))
            for name in filenames:
                full = os.path.join(dirpath, name)
                paths.append(os.path.relpath(full, self.root).replace(os.sep, "/"))
        return sorted(paths)
