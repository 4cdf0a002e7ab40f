"""
Text Processing Utilities

Regex helpers that turn an AI answer into Telegram-ready text. They are used
by messaging.processor.ResponseProcessor.

Functions:
    - is_image_url: Check a URL against the image allow-list
    - extract_markdown_images: Find ![alt](url) references
    - extract_image_urls: Find bare image URLs
    - remove_markdown_images: Strip ![alt](url) references
    - remove_image_urls: Strip bare image URLs
    - collapse_newlines: Reduce 3+ newlines to exactly 2
    - format_for_telegram: Convert AI markdown to Telegram Markdown
    - decorate_section_headers: Prefix known headers with an icon
    - validate_markdown: Repair unbalanced Telegram Markdown delimiters
"""

import logging
import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

log = logging.getLogger(__name__)

MARKDOWN_IMAGE_PATTERN = re.compile(r'!\[([^\]]*)\]\(([^)\s]+)\)')
# Sentence punctuation right after a bare URL is not part of it
URL_TRAILING_PUNCTUATION = '.,;:!?'
URL_PATTERN = re.compile(r'https?://[^\s)]*[^\s).,;:!?]')

IMAGE_URL_PATTERNS = [
    re.compile(r'^https?://[^\s]+\.(jpg|jpeg|png|gif|webp|svg)(\?[^\s]*)?$', re.IGNORECASE),
    re.compile(r'^https?://imagedelivery\.net[^\s]*$', re.IGNORECASE),
    re.compile(r'^https?://hcti\.io/v1/image/[a-f0-9-]+$', re.IGNORECASE),
    re.compile(r'^https?://[^\s]*cloudinary\.com[^\s]*$', re.IGNORECASE),
    re.compile(r'^https?://[^\s]*imgur\.com[^\s]*$', re.IGNORECASE),
    re.compile(r'^https?://[^\s]*unsplash\.com[^\s]*$', re.IGNORECASE),
    re.compile(r'^https?://[^\s]*pexels\.com[^\s]*$', re.IGNORECASE),
]

# Telegram (legacy) Markdown delimiters checked for balance
MARKUP_DELIMITERS = ('*', '`')


@dataclass
class MarkupValidation:
    """Result of validate_markdown()."""
    is_valid: bool
    cleaned: str


def is_image_url(text: Optional[str]) -> bool:
    """
    Check whether a URL points at an image.

    Args:
        text: Candidate URL

    Returns:
        bool: True for known image extensions or image hosting domains
    """
    if not text or not isinstance(text, str):
        return False

    trimmed = text.strip()
    return any(pattern.match(trimmed) for pattern in IMAGE_URL_PATTERNS)


def extract_markdown_images(text: str) -> List[str]:
    """Return the url group of every ![alt](url) in order."""
    if not text:
        return []
    return [match.group(2) for match in MARKDOWN_IMAGE_PATTERN.finditer(text)]


def extract_image_urls(text: str) -> List[str]:
    """Return every bare URL in the text that passes is_image_url()."""
    if not text:
        return []
    return [url for url in URL_PATTERN.findall(text) if is_image_url(url)]


def dedupe(items: Iterable[str]) -> List[str]:
    """Remove duplicates by exact match, keeping first occurrence order."""
    return list(dict.fromkeys(items))


def _cut(text: str, pattern: re.Pattern, keep=None) -> str:
    """
    Remove matches of pattern together with their surrounding spaces.

    A removed reference between two words leaves exactly one space; at the
    start or end of a line, or before punctuation, it leaves nothing.
    """
    result = ''
    position = 0

    for match in pattern.finditer(text):
        if keep is not None and keep(match.group(0)):
            continue

        start, end = match.start(), match.end()
        while start > position and text[start - 1] in ' \t':
            start -= 1
        while end < len(text) and text[end] in ' \t':
            end += 1

        result += text[position:start]
        at_line_start = not result or result[-1] in '\n '
        at_line_end = end == len(text) or text[end] in '\n' + URL_TRAILING_PUNCTUATION
        if not (at_line_start or at_line_end):
            result += ' '
        position = end

    return result + text[position:]


def remove_markdown_images(text: str) -> str:
    """Strip every ![alt](url) reference from the text."""
    if not text:
        return ''
    return _cut(text, MARKDOWN_IMAGE_PATTERN)


def remove_image_urls(text: str) -> str:
    """Strip bare image URLs from the text. Other URLs are kept untouched."""
    if not text:
        return ''
    return _cut(text, URL_PATTERN, keep=lambda url: not is_image_url(url))


def collapse_newlines(text: str) -> str:
    """Drop trailing spaces on each line, reduce 3+ newlines to 2 and trim."""
    text = re.sub(r'[ \t]+$', '', text, flags=re.MULTILINE)
    return re.sub(r'\n{3,}', '\n\n', text).strip()


def decorate_section_headers(text: str, headers: Optional[Dict[str, str]] = None) -> str:
    """
    Prefix recognised section headers with an icon.

    Args:
        text: Telegram-formatted text
        headers: Mapping of header keyword (e.g. "Details:") to icon

    Returns:
        str: Text where "*Details:*" became "📋 *Details:*"
    """
    if not headers:
        return text

    for keyword, icon in headers.items():
        bold = re.escape(f"*{keyword}*")
        decorated = f"{icon} *{keyword}*"
        # Skip headers that already carry the icon
        text = re.sub(rf'(?<!{re.escape(icon)} ){bold}', lambda _: decorated, text)
        text = re.sub(rf'(?m)^{re.escape(keyword)}[ \t]*$', lambda _: decorated, text)
    return text


def format_for_telegram(text: str, headers: Optional[Dict[str, str]] = None) -> str:
    """
    Convert the AI backend markdown dialect to Telegram Markdown.

    - literal "\\n" sequences become real newlines
    - **bold** becomes *bold*
    - optional section header decoration

    Args:
        text: Cleaned answer text
        headers: Optional header → icon mapping

    Returns:
        str: Formatted text
    """
    if not text:
        return text

    formatted = text.replace('\\n', '\n')
    formatted = re.sub(r'\*\*(.*?)\*\*', r'*\1*', formatted)
    formatted = decorate_section_headers(formatted, headers)
    return collapse_newlines(formatted)


def strip_markup(text: str) -> str:
    """Remove every Markdown delimiter, leaving plain text."""
    return re.sub(r'[*`_]', '', text or '')


def validate_markdown(text: Optional[str]) -> MarkupValidation:
    """
    Repair unbalanced Telegram Markdown instead of rejecting the message.

    For each delimiter with an odd count the last occurrence is dropped.
    Empty delimiter pairs standing on their own are removed.
    Never raises: on any error the text is returned with all markup stripped.

    Args:
        text: Text about to be sent with parse_mode Markdown

    Returns:
        MarkupValidation: is_valid and the cleaned text
    """
    if not text:
        return MarkupValidation(is_valid=True, cleaned='')

    try:
        cleaned = text

        for delimiter in MARKUP_DELIMITERS:
            if cleaned.count(delimiter) % 2 != 0:
                last = cleaned.rfind(delimiter)
                cleaned = cleaned[:last] + cleaned[last + 1:]

        for delimiter in MARKUP_DELIMITERS:
            d = re.escape(delimiter)
            cleaned = re.sub(rf'(?<!\S){d}[ \t]*{d}(?!\S)', '', cleaned)

        return MarkupValidation(is_valid=True, cleaned=cleaned.strip())

    except Exception as e:
        log.error(f"Markdown validation failed: {e}")
        return MarkupValidation(is_valid=False, cleaned=strip_markup(str(text)))
