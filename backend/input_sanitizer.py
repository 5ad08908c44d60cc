"""
Market Intel - Input Sanitization Module
========================================

Sanitization for user-supplied text that ends up inside AI prompts, plus
redaction of secrets from error messages before they are logged or returned.

Features:
- HTML entity escaping of competitor names
- Prompt injection and SQL injection pattern detection
- Length limits
- Secret redaction (bearer tokens, sk- keys, hex tokens, user ids)

Usage:
    from input_sanitizer import sanitize_competitor_name, sanitize_error

    name = sanitize_competitor_name(raw)   # raises ValueError when rejected
    logger.error(sanitize_error(str(e)))
"""

import re
import html
import logging
from typing import Dict, Any, List, Optional, Tuple
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

MAX_COMPETITOR_NAME_LENGTH = 200
MAX_FREE_TEXT_LENGTH = 5000

SQL_INJECTION_PATTERNS = [
    r";\s*(?:DROP|DELETE|TRUNCATE|ALTER|CREATE|INSERT|UPDATE)\s",
    r"(?:UNION\s+(?:ALL\s+)?SELECT)",
    r"(?:OR|AND)\s+['\"]\s*=\s*['\"]",
    r"(?:OR|AND)\s+\d+\s*=\s*\d+",
    r"xp_cmdshell",
]

PROMPT_INJECTION_PATTERNS = [
    r"ignore\s+(?:all\s+)?(?:previous|prior|above)\s+instructions?",
    r"disregard\s+(?:all\s+)?(?:previous|prior|above)\s+instructions?",
    r"forget\s+(?:everything|all)\s+(?:you\s+)?(?:know|learned)",
    r"you\s+are\s+now\s+(?:a\s+)?(?:new|different)",
    r"pretend\s+(?:to\s+be|you\s+are)",
    r"system\s*:\s*",
    r"<\s*system\s*>",
    r"\[INST\]",
    r"<<SYS>>",
    r"<\|im_start\|>",
    r"### (?:Human|Assistant|System):",
]

# (pattern, replacement) applied in order by sanitize_error
SECRET_PATTERNS: List[Tuple[str, str]] = [
    (r"Bearer\s+[A-Za-z0-9\-._~+/]+=*", "Bearer [REDACTED]"),
    (r"sk-[A-Za-z0-9\-_]{8,}", "sk-[REDACTED]"),
    (r"\b[a-fA-F0-9]{64}\b", "[REDACTED_TOKEN]"),
    (r"([?&](?:key|api_key|apikey)=)[^&\s\"']+", r"\1[REDACTED]"),
    (r"(user_id[\"']?\s*[:=]\s*[\"']?)[A-Za-z0-9\-]+", r"\1[REDACTED]"),
]


# =============================================================================
# BUILDING BLOCKS
# =============================================================================

def escape_html(text: str) -> str:
    """Escape HTML special characters to prevent XSS."""
    return html.escape(text, quote=True)


def normalize_whitespace(text: str) -> str:
    """Collapse runs of whitespace and trim the ends."""
    text = re.sub(r'[\t\r\n\f\v]+', ' ', text)
    text = re.sub(r' +', ' ', text)
    return text.strip()


def remove_control_characters(text: str) -> str:
    # Keeps tab, newline and carriage return
    return ''.join(
        char for char in text
        if ord(char) >= 32 or char in '\t\n\r'
    )


def _first_match(text: str, patterns: List[str]) -> Optional[str]:
    for pattern in patterns:
        if re.search(pattern, text, re.IGNORECASE):
            return pattern
    return None


def detect_sql_injection(text: str) -> Tuple[bool, Optional[str]]:
    """Returns (is_suspicious, matched_pattern)."""
    pattern = _first_match(text, SQL_INJECTION_PATTERNS)
    return (pattern is not None, pattern)


def detect_prompt_injection(text: str) -> Tuple[bool, Optional[str]]:
    """Returns (is_suspicious, matched_pattern)."""
    pattern = _first_match(text, PROMPT_INJECTION_PATTERNS)
    return (pattern is not None, pattern)


# =============================================================================
# VALIDATION RESULT
# =============================================================================

@dataclass
class ValidationResult:
    """Result of input validation."""
    valid: bool
    sanitized: str
    original: str
    warnings: List[str] = field(default_factory=list)
    blocked_reason: Optional[str] = None
    security_flags: Dict[str, bool] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "sanitized": self.sanitized,
            "original": self.original,
            "warnings": self.warnings,
            "blocked_reason": self.blocked_reason,
            "security_flags": self.security_flags,
        }


# =============================================================================
# SANITIZER
# =============================================================================

class InputSanitizer:
    """
    Sanitizer for short user-supplied strings that are interpolated into prompts.

    Steps: length check, control-character removal, whitespace normalization,
    SQL and prompt injection detection, HTML escaping.
    """

    def __init__(
        self,
        max_length: int = MAX_COMPETITOR_NAME_LENGTH,
        block_sql_injection: bool = True,
        block_prompt_injection: bool = True,
        escape_html_entities: bool = True,
    ):
        self.max_length = max_length
        self.block_sql_injection = block_sql_injection
        self.block_prompt_injection = block_prompt_injection
        self.escape_html_entities = escape_html_entities

    def validate(self, value: str) -> ValidationResult:
        original = value
        if value is None or not str(value).strip():
            return ValidationResult(
                valid=False, sanitized="", original=original or "",
                warnings=["Empty value"], blocked_reason="Value cannot be empty",
            )

        value = str(value)
        warnings: List[str] = []
        flags: Dict[str, bool] = {}

        cleaned = normalize_whitespace(remove_control_characters(value))
        if cleaned != value:
            warnings.append("Whitespace or control characters removed")

        if len(cleaned) > self.max_length:
            logger.warning(f"Input exceeds max length ({len(cleaned)} > {self.max_length})")
            return ValidationResult(
                valid=False, sanitized=cleaned[:self.max_length], original=original,
                warnings=warnings,
                blocked_reason=f"Value too long ({len(cleaned)} characters, max {self.max_length})",
            )

        sql_detected, sql_pattern = detect_sql_injection(cleaned)
        flags["sql_injection_detected"] = sql_detected
        if sql_detected and self.block_sql_injection:
            logger.warning(f"SQL injection pattern detected: {sql_pattern}")
            return ValidationResult(
                valid=False, sanitized=cleaned, original=original, warnings=warnings,
                blocked_reason="Value contains suspicious SQL patterns",
                security_flags=flags,
            )

        prompt_detected, prompt_pattern = detect_prompt_injection(cleaned)
        flags["prompt_injection_detected"] = prompt_detected
        if prompt_detected and self.block_prompt_injection:
            logger.warning(f"Prompt injection pattern detected: {prompt_pattern}")
            return ValidationResult(
                valid=False, sanitized=cleaned, original=original, warnings=warnings,
                blocked_reason="Value contains prompt manipulation patterns",
                security_flags=flags,
            )

        if self.escape_html_entities:
            escaped = escape_html(cleaned)
            if escaped != cleaned:
                warnings.append("HTML entities escaped")
            cleaned = escaped

        return ValidationResult(
            valid=True, sanitized=cleaned, original=original,
            warnings=warnings, security_flags=flags,
        )


_name_sanitizer = InputSanitizer(max_length=MAX_COMPETITOR_NAME_LENGTH)
_text_sanitizer = InputSanitizer(max_length=MAX_FREE_TEXT_LENGTH, block_sql_injection=False)


def sanitize_competitor_name(name: str) -> str:
    """
    Clean a competitor name for use in a prompt.

    Raises:
        ValueError: If the name is empty, too long or looks like an injection.
    """
    result = _name_sanitizer.validate(name)
    if not result.valid:
        raise ValueError(f"Invalid competitor name: {result.blocked_reason}")
    return result.sanitized


def sanitize_text(text: str) -> str:
    """Clean free text (company descriptions, ticket bodies). Raises ValueError."""
    result = _text_sanitizer.validate(text)
    if not result.valid:
        raise ValueError(result.blocked_reason or "Invalid text")
    return result.sanitized


def sanitize_error(message: Any) -> str:
    """Redact credentials and user identifiers from an error message."""
    text = str(message) if message is not None else ""
    for pattern, replacement in SECRET_PATTERNS:
        text = re.sub(pattern, replacement, text)
    return text
