"""
Signature-based SQL injection and XSS detection over request payloads
"""

import re
import logging
from typing import Any, Dict, Iterator, List, Pattern, Tuple

logger = logging.getLogger(__name__)

REQUEST_SECTIONS = ('query', 'body', 'params')

SQL_INJECTION_PATTERNS: List[Pattern] = [
    re.compile(r"\bunion\b(\s+all)?\s+\bselect\b", re.IGNORECASE),
    re.compile(r"\bselect\b\s+(\*|[\w.\s]+,)[\s\S]*?\bfrom\b", re.IGNORECASE),
    re.compile(r"\binsert\s+into\b", re.IGNORECASE),
    re.compile(r"\bdelete\s+from\b", re.IGNORECASE),
    re.compile(r"\bdrop\s+(table|database)\b", re.IGNORECASE),
    re.compile(r"\bupdate\b\s+\w+\s+\bset\b", re.IGNORECASE),
    re.compile(r"\b(alter|truncate)\s+table\b", re.IGNORECASE),
    re.compile(r"\bdeclare\s+@", re.IGNORECASE),
    re.compile(r"(--|/\*|\*/)"),
    re.compile(r"\b(or|and)\b\s*\d+\s*=\s*\d+", re.IGNORECASE),
    re.compile(r"['\"]\s*\b(or|and)\b\s+['\"]?\w+['\"]?\s*(=|like)\s*['\"]?\w+", re.IGNORECASE),
    re.compile(r"(['\"]\s*;|`)"),
    re.compile(r"\b(exec|execute)\s*\(", re.IGNORECASE),
    re.compile(r"\bwaitfor\s+delay\b", re.IGNORECASE),
    re.compile(r"\b(group_)?concat\s*\(", re.IGNORECASE),
    re.compile(r"\binformation_schema\b", re.IGNORECASE),
    re.compile(r"\b(sleep|benchmark)\s*\(", re.IGNORECASE),
]

XSS_PATTERNS: List[Pattern] = [
    re.compile(r"<script[^>]*>[\s\S]*?</script>", re.IGNORECASE),
    re.compile(r"<iframe[^>]*>[\s\S]*?</iframe>", re.IGNORECASE),
    re.compile(r"<object[^>]*>[\s\S]*?</object>", re.IGNORECASE),
    re.compile(r"<embed[^>]*>", re.IGNORECASE),
    re.compile(r"<[^>]+\bon\w+\s*=\s*[\"'][^\"']*[\"']", re.IGNORECASE),
    re.compile(r"javascript\s*:", re.IGNORECASE),
    re.compile(r"vbscript\s*:", re.IGNORECASE),
    re.compile(r"<img[^>]+src\s*=\s*[\"']javascript:", re.IGNORECASE),
    re.compile(r"\beval\s*\(", re.IGNORECASE),
    re.compile(r"\bexpression\s*\(", re.IGNORECASE),
    re.compile(r"<[^>]+style\s*=\s*[\"'][^\"']*expression", re.IGNORECASE),
]


def iter_string_leaves(value: Any, path: str = '') -> Iterator[Tuple[str, str]]:
    """
    Yield (dotted_path, text) for every string inside a JSON-like value.

    Numbers, booleans and None are leaves without text and are skipped;
    list items are addressed by index.
    """
    if isinstance(value, str):
        yield path, value
    elif isinstance(value, dict):
        for key, item in value.items():
            yield from iter_string_leaves(item, f"{path}.{key}" if path else str(key))
    elif isinstance(value, (list, tuple)):
        for index, item in enumerate(value):
            yield from iter_string_leaves(item, f"{path}.{index}" if path else str(index))


def _section(request_data: Any, name: str) -> Any:
    if isinstance(request_data, dict):
        return request_data.get(name)
    return getattr(request_data, name, None)


def scan_request(request_data: Any, patterns: List[Pattern]) -> Tuple[List[str], List[str]]:
    """Return (matched pattern sources, suspicious field paths)"""
    matched: List[str] = []
    fields: List[str] = []

    if not request_data:
        return matched, fields

    for section in REQUEST_SECTIONS:
        data = _section(request_data, section)
        if not data:
            continue
        for path, text in iter_string_leaves(data, section):
            for pattern in patterns:
                if pattern.search(text):
                    matched.append(pattern.pattern)
                    fields.append(path)
                    break

    return matched, fields


def request_context(request_data: Any) -> Dict[str, Any]:
    context = {section: _section(request_data, section) for section in REQUEST_SECTIONS}
    for name in ('ip_address', 'user_id', 'user_agent', 'method', 'path'):
        context[name] = _section(request_data, name)
    return context


class InjectionDetector:
    """Scans request payloads and records matches as security events"""

    def __init__(self, recorder):
        self.recorder = recorder

    async def detect_sql_injection(self, request_data: Any) -> Dict[str, Any]:
        try:
            patterns, fields = scan_request(request_data, SQL_INJECTION_PATTERNS)
            analysis = {
                'is_injection': bool(patterns),
                'patterns': patterns,
                'suspicious_fields': fields
            }

            if analysis['is_injection']:
                logger.warning(f"SQL injection signatures in fields {fields}")
                await self.recorder.create_security_event(
                    'sql_injection_attempt', analysis, request_context(request_data)
                )

            return analysis

        except Exception as e:
            logger.error(f"SQL injection detection failed: {e}")
            return {'is_injection': False, 'patterns': [], 'suspicious_fields': []}

    async def detect_xss_attempt(self, request_data: Any) -> Dict[str, Any]:
        try:
            patterns, fields = scan_request(request_data, XSS_PATTERNS)
            analysis = {
                'is_xss': bool(patterns),
                'patterns': patterns,
                'suspicious_fields': fields
            }

            if analysis['is_xss']:
                logger.warning(f"XSS signatures in fields {fields}")
                await self.recorder.create_security_event(
                    'xss_attempt', analysis, request_context(request_data)
                )

            return analysis

        except Exception as e:
            logger.error(f"XSS detection failed: {e}")
            return {'is_xss': False, 'patterns': [], 'suspicious_fields': []}
