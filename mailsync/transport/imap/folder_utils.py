import logging
import re

from mailsync.models import RemoteFolderDescriptor

logger = logging.getLogger(__name__)

_LIST_LINE = re.compile(rb'^\((?P<flags>[^)]*)\)\s+(?:"(?P<delimiter>\\.|[^"])"|NIL)\s+(?P<name>.+)$', re.IGNORECASE)
_COPYUID = re.compile(rb"COPYUID\s+\d+\s+\S+\s+(\d+)", re.IGNORECASE)
_APPENDUID = re.compile(rb"APPENDUID\s+\d+\s+(\d+)", re.IGNORECASE)


class FolderUtils:
    """Helpers for parsing IMAP folder responses."""

    @staticmethod
    def parse_list_lines(lines: list[bytes]) -> list[RemoteFolderDescriptor]:
        descriptors = []
        for line in lines:
            if not isinstance(line, (bytes, bytearray)) or b"LIST completed" in line:
                continue
            descriptor = FolderUtils.parse_list_line(bytes(line))
            if descriptor is not None and "\\noselect" not in (flag.lower() for flag in descriptor.flags):
                descriptors.append(descriptor)
        return descriptors

    @staticmethod
    def parse_list_line(line: bytes) -> RemoteFolderDescriptor | None:
        """
        Parse one LIST response line.

        Examples:
            b'(\\HasNoChildren) "/" INBOX'
            b'(\\Sent \\HasNoChildren) "/" "Sent Items"'
            b'(\\HasChildren) NIL "Archive"'
        """
        try:
            match = _LIST_LINE.match(line.strip())
            if match is None:
                return None
            flags = match.group("flags").decode("utf-8", errors="ignore").split()
            # A quoted delimiter may itself be escaped, e.g. "\\"
            raw_delimiter = match.group("delimiter")
            delimiter = raw_delimiter[-1:].decode("utf-8") if raw_delimiter else None

            folder_part = match.group("name").strip()
            if folder_part.startswith(b'"') and folder_part.endswith(b'"') and len(folder_part) >= 2:
                folder_part = folder_part[1:-1].replace(b'\\"', b'"').replace(b"\\\\", b"\\")
            name = folder_part.decode("utf-8").strip()
            if not name:
                return None
            return RemoteFolderDescriptor(name=name, delimiter=delimiter, flags=flags)

        except (UnicodeDecodeError, ValueError) as e:
            logger.warning(f"Failed to parse folder from line {line.decode('utf-8', errors='ignore')}: {e}")
        return None

    @staticmethod
    def parse_copyuid(lines: list[bytes]) -> int | None:
        """New UID from a COPYUID response code (single-message move)."""
        return FolderUtils._search_int(_COPYUID, lines)

    @staticmethod
    def parse_appenduid(lines: list[bytes]) -> int | None:
        return FolderUtils._search_int(_APPENDUID, lines)

    @staticmethod
    def _search_int(pattern: re.Pattern[bytes], lines: list[bytes]) -> int | None:
        for line in lines:
            if isinstance(line, (bytes, bytearray)):
                match = pattern.search(line)
                if match and match.group(1).isdigit():
                    return int(match.group(1))
        return None
