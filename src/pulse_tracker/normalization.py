"""Utilities to normalize window titles and derive clustering keys from them."""

from __future__ import annotations

import re
from typing import Optional
from urllib.parse import urlparse

_BROWSER_SUFFIXES: dict[str, tuple[str, ...]] = {
    "msedge.exe": (" - Microsoft Edge", " — Microsoft Edge"),
    "chrome.exe": (" - Google Chrome",),
    "firefox.exe": (" - Mozilla Firefox", " — Mozilla Firefox"),
    "brave.exe": (" - Brave",),
    "opera.exe": (" - Opera",),
    "google chrome": (" - Google Chrome",),
    "firefox": (" — Mozilla Firefox", " - Mozilla Firefox"),
    "microsoft edge": (" - Microsoft Edge",),
    "brave browser": (" - Brave",),
}


def normalize_window_title(app_name: Optional[str], window_title: Optional[str]) -> Optional[str]:
    """Remove common browser suffixes to surface tab names."""
    if not window_title:
        return None
    normalized = window_title.strip()
    if not app_name:
        return normalized or None

    suffixes = _BROWSER_SUFFIXES.get(app_name.lower())
    if suffixes:
        for suffix in suffixes:
            if normalized.endswith(suffix):
                normalized = normalized[: -len(suffix)].rstrip(" -")
                break

    normalized = _strip_tab_count(normalized)
    normalized = re.sub(r"\s{2,}", " ", normalized).strip()
    return normalized or None


_EXTRA_TAB_COUNT_PATTERN = re.compile(r"\s+and\s+\d+\s+more\s+pages?", re.IGNORECASE)


def _strip_tab_count(value: str) -> str:
    cleaned = _EXTRA_TAB_COUNT_PATTERN.sub("", value)
    return cleaned.strip(" -|")


# URLs


def _parse(url: str):
    url = url.strip()
    if "://" not in url:
        url = "//" + url
    return urlparse(url)


def host_of(url: Optional[str]) -> Optional[str]:
    """Lower-cased host of ``url``, or None when it has none."""
    if not url:
        return None
    try:
        host = _parse(url).hostname
    except ValueError:
        return None
    return host.lower() if host else None


def path_of(url: Optional[str]) -> Optional[str]:
    if not url:
        return None
    try:
        path = _parse(url).path
    except ValueError:
        return None
    return path or None


def strip_www(host: str) -> str:
    return host[4:] if host.startswith("www.") else host


_SECOND_LEVEL_LABELS = {"co", "com", "org", "net", "gov", "ac", "edu"}


def domain_root(host: str) -> str:
    """Name-like label of a host: ``app.acme.com`` and ``acme.co.uk`` give ``acme``."""
    labels = [label for label in strip_www(host.lower()).split(".") if label]
    if not labels:
        return ""
    if len(labels) >= 3 and labels[-2] in _SECOND_LEVEL_LABELS and len(labels[-1]) == 2:
        return labels[-3]
    if len(labels) >= 2:
        return labels[-2]
    return labels[0]


def subdomain_of(host: str) -> str:
    """Labels in front of the name-like label, e.g. ``app`` for ``app.acme.com``."""
    labels = [label for label in strip_www(host.lower()).split(".") if label]
    root = domain_root(host)
    if root not in labels:
        return ""
    return ".".join(labels[: labels.index(root)])


# Folders


def path_segments(path: str) -> list[str]:
    return [segment for segment in re.split(r"[\\/]+", path.strip()) if segment]


def last_segment(path: Optional[str]) -> Optional[str]:
    if not path:
        return None
    segments = path_segments(path)
    return segments[-1] if segments else None


def looks_like_path(value: Optional[str]) -> bool:
    if not value:
        return False
    value = value.strip()
    return "/" in value or "\\" in value or value.startswith("~")


GENERIC_FOLDERS = frozenset(
    {
        "~",
        "code",
        "desktop",
        "dev",
        "developer",
        "documents",
        "git",
        "home",
        "projects",
        "repos",
        "src",
        "users",
        "work",
        "workspace",
    }
)


def folder_tail(path: Optional[str]) -> Optional[str]:
    """Trailing one or two segments of a folder path.

    The parent is kept when it is itself a meaningful name
    (``clients/acme-web``) and dropped when it is a generic container
    (``~/projects/acme-web`` gives ``acme-web``).
    """
    if not path:
        return None
    segments = path_segments(path)
    if not segments:
        return None
    leaf = segments[-1]
    if leaf.lower() in GENERIC_FOLDERS:
        return None
    if len(segments) >= 2 and segments[-2].lower() not in GENERIC_FOLDERS:
        return f"{segments[-2]}/{leaf}"
    return leaf


def words_of(name: str) -> str:
    """Lower-case a file or folder name and turn separators into spaces."""
    cleaned = re.sub(r"[-_.]+", " ", name.lower())
    return re.sub(r"\s+", " ", cleaned).strip()


# Titles

_TITLE_SEPARATORS = re.compile(r"\s+[—–\-|:·•]\s+")

_TITLE_STOPWORDS = frozenset(
    {
        "the",
        "and",
        "new",
        "tab",
        "untitled",
        "home",
        "unknown",
        "inbox",
        "settings",
        "loading",
    }
)


def title_phrase(title: Optional[str], min_length: int = 3, max_words: int = 3) -> Optional[str]:
    """Normalized leading keyword phrase of a window title.

    ``"Acme Launch — Notes"`` gives ``"acme launch"``. Returns None when the
    leading word is too short or is a stopword.
    """
    if not title:
        return None
    head = _TITLE_SEPARATORS.split(title.strip(), maxsplit=1)[0]
    words = re.findall(r"[\w+&'.]+", head.lower())
    words = [word.strip(".'") for word in words if word.strip(".'")]
    if not words:
        return None
    first = words[0]
    if len(first) < min_length or first in _TITLE_STOPWORDS or first.isdigit():
        return None
    return " ".join(words[:max_words])


def title_prefix_regex(phrase: str) -> str:
    """Case-insensitive regex for titles that start with the words of ``phrase``.

    Any run of punctuation or whitespace may sit between the words, so
    ``"acme launch notes"`` matches ``"Acme Launch: Notes"``.
    """
    words = [re.escape(word) for word in phrase.split(" ") if word]
    return r"(?i)^\W*" + r"\W+".join(words) + r"(?![\w+&])"


def smart_capitalize(text: str) -> str:
    """Upper-case the first letter of each word, leaving the rest untouched."""
    return " ".join(word[:1].upper() + word[1:] for word in text.split(" ") if word)
