"""
Content and filename screening for uploaded files.

Checks are additive: each one that triggers appends a threat and lowers the
confidence score. A file is safe only when no check triggered.
"""

import hashlib
import logging
import re
import secrets
import time
from typing import Final, Tuple

from invite_media.domain.models import FileMetadata, SecurityVerdict

logger = logging.getLogger(__name__)

EXECUTABLE_SIGNATURES: Final[Tuple[bytes, ...]] = (
    b"\x4d\x5a",  # PE / Windows
    b"\x7f\x45\x4c\x46",  # ELF
    b"\xca\xfe\xba\xbe",  # Java class
    b"\xfe\xed\xfa\xce",  # Mach-O
)

IMAGE_EXTENSIONS: Final = frozenset({".jpg", ".jpeg", ".png", ".gif", ".bmp", ".webp", ".svg"})

SUSPICIOUS_EXTENSIONS: Final = frozenset(
    {
        ".exe", ".bat", ".cmd", ".com", ".pif", ".scr", ".vbs", ".js", ".jar",
        ".php", ".asp", ".aspx", ".jsp", ".sh", ".ps1", ".py", ".rb", ".pl",
    }
)

PATH_TRAVERSAL_PATTERNS: Final[Tuple[str, ...]] = ("../", "..\\", "~/", "/etc/", "/var/", "/sys/")

SCRIPT_MARKERS: Final[Tuple[str, ...]] = ("<script", "javascript:")
SCRIPT_SCAN_BYTES: Final = 1024
ZIP_BOMB_THRESHOLD: Final = 1024
MAX_FILENAME_BYTES: Final = 255

_UNSAFE_CHARS_RE = re.compile(r'[<>:"|?*]')
_SEPARATORS_RE = re.compile(r"[/\\]")


def _extension(filename: str) -> str:
    lowered = filename.lower()
    index = lowered.rfind(".")
    return lowered[index:] if index >= 0 else ""


def _strip_dot_pairs(value: str) -> str:
    while ".." in value:
        value = value.replace("..", "")
    return value


def _truncate_utf8(value: str, limit: int) -> str:
    encoded = value.encode("utf-8")
    if len(encoded) <= limit:
        return value
    return encoded[:limit].decode("utf-8", errors="ignore")


class FileSecurityScanner:
    """Signature, script and filename checks for uploads."""

    def file_hash(self, data: bytes) -> str:
        return hashlib.sha256(data).hexdigest()

    def extract_metadata(self, data: bytes, original_name: str) -> FileMetadata:
        return FileMetadata(name=original_name, size=len(data), hash=self.file_hash(data))

    def is_image_file(self, filename: str) -> bool:
        return _extension(filename) in IMAGE_EXTENSIONS

    def scan(self, data: bytes, filename: str) -> SecurityVerdict:
        """Scan ``data`` uploaded as ``filename``; fails closed on internal errors."""
        try:
            return self._scan(data, filename)
        except Exception:
            logger.exception("Error during file security scan")
            return SecurityVerdict(is_safe=False, threats=["Security scan failed"], confidence=0)

    def _scan(self, data: bytes, filename: str) -> SecurityVerdict:
        threats = []
        confidence = 100

        for signature in EXECUTABLE_SIGNATURES:
            if data[: len(signature)] == signature:
                threats.append("Executable file detected")
                confidence -= 50

        if self.is_image_file(filename):
            head = data[:SCRIPT_SCAN_BYTES].decode("utf-8", errors="replace")
            if any(marker in head for marker in SCRIPT_MARKERS):
                threats.append("Potential script content in image")
                confidence -= 40

        extension = _extension(filename)
        if extension in SUSPICIOUS_EXTENSIONS:
            threats.append(f"Suspicious file extension: {extension}")
            confidence -= 30

        if filename.lower().endswith(".zip") and len(data) < ZIP_BOMB_THRESHOLD:
            threats.append("Potential zip bomb detected")
            confidence -= 25

        if "\0" in filename:
            threats.append("Null bytes in filename")
            confidence -= 20

        for pattern in PATH_TRAVERSAL_PATTERNS:
            if pattern in filename:
                threats.append(f"Path traversal pattern detected: {pattern}")
                confidence -= 15

        return SecurityVerdict(is_safe=not threats, threats=threats, confidence=max(0, confidence))

    def is_blacklisted(self, file_hash: str) -> bool:
        """
        Known-bad hash lookup.

        Not implemented: there is no hash feed behind this yet, so every file
        passes. Do not count it as a control.
        """
        logger.debug("Hash blacklist lookup skipped for %s (no blacklist configured)", file_hash)
        return False

    def sanitize_filename(self, filename: str) -> str:
        """Strip traversal sequences, separators, NUL and shell-hostile characters."""
        sanitized = filename.replace("\0", "")
        sanitized = _SEPARATORS_RE.sub("_", sanitized)
        sanitized = _UNSAFE_CHARS_RE.sub("_", sanitized)
        sanitized = _strip_dot_pairs(sanitized)

        if len(sanitized.encode("utf-8")) > MAX_FILENAME_BYTES:
            index = sanitized.rfind(".")
            extension = sanitized[index:] if index > 0 else ""
            extension_bytes = len(extension.encode("utf-8"))
            if extension and extension_bytes < MAX_FILENAME_BYTES:
                stem = _truncate_utf8(sanitized[:index], MAX_FILENAME_BYTES - extension_bytes)
                sanitized = stem + extension
            else:
                sanitized = _truncate_utf8(sanitized, MAX_FILENAME_BYTES)
            sanitized = _strip_dot_pairs(sanitized)

        if not sanitized.strip():
            sanitized = f"file_{int(time.time() * 1000)}"
        return sanitized

    def generate_secure_filename(self, original_name: str) -> str:
        """``{stem}_{epochMillis}_{hex8}{ext}`` built from the sanitized name."""
        sanitized = self.sanitize_filename(original_name)
        index = sanitized.rfind(".")
        stem, extension = (sanitized[:index], sanitized[index:]) if index >= 0 else (sanitized, "")
        return f"{stem}_{int(time.time() * 1000)}_{secrets.token_hex(4)}{extension}"
