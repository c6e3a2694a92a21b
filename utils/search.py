"""Keyword search over the files in a file store."""

import re

_WORD = re.compile(r"[A-Za-z0-9_]+")


def query_terms(query):
    return sorted({w.lower() for w in _WORD.findall(query or "") if len(w) > 2})


class KeywordSearchIndex:
    """Scores each file by the share of query words it contains."""

    def __init__(self, files):
        self.files = files

    def score(self, terms, path, content):
        haystack = f"{path}\n{content}".lower()
        hits = sum(1 for t in terms if t in haystack)
        return hits / len(terms)

    def search(self, query, top_k=5):
        terms = query_terms(query)
        if not terms:
            return []
        scored = []
        for path in self.files.list():
            content = self.files.read(path) or ""
            s = self.score(terms, path, content)
            if s > 0:
                scored.append((s, path))
        scored.sort(key=lambda item: (-item[0], item[1]))
        return [path for _, path in scored[:top_k]]
