"""Map file paths to the language ids the symbol extractor understands."""

import os

EXTENSION_LANGUAGES = {
    ".ts": "typescript",
    ".tsx": "tsx",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".py": "python",
    ".go": "go",
    ".rs": "rust",
    ".tf": "hcl",
    ".hcl": "hcl",
    ".java": "java",
    ".rb": "ruby",
    ".json": "json",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".md": "markdown",
}


def detect_language(path):
    _, ext = os.path.splitext(path or "")
    return EXTENSION_LANGUAGES.get(ext.lower(), "text")
