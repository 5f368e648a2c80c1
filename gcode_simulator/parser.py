import re
from typing import Dict, Iterable, List, Optional

from .models import GCodeCommand

COMMENT_PREFIXES = (';', '%')

_COMMAND_RE = re.compile(r'^([GM]\d+)')

# 파라미터별 패턴 - 라인에서 해당 문자 뒤 첫 번째 숫자만 사용
_SIGNED = r'([-+]?\d*\.?\d+)'
_UNSIGNED = r'(\d*\.?\d+)'
_PARAM_PATTERNS = {
    'X': re.compile('X' + _SIGNED),
    'Y': re.compile('Y' + _SIGNED),
    'Z': re.compile('Z' + _SIGNED),
    'E': re.compile('E' + _SIGNED),
    'F': re.compile('F' + _UNSIGNED),
    'I': re.compile('I' + _SIGNED),
    'J': re.compile('J' + _SIGNED),
    'K': re.compile('K' + _SIGNED),
    'R': re.compile('R' + _SIGNED),
    'P': re.compile('P' + _UNSIGNED),
    'S': re.compile('S' + _UNSIGNED),
    'T': re.compile(r'T(\d+)'),
    # axis extensions
    'A': re.compile('A' + _SIGNED),
    'B': re.compile('B' + _SIGNED),
    'C': re.compile('C' + _SIGNED),
    'U': re.compile('U' + _SIGNED),
    'V': re.compile('V' + _SIGNED),
    'W': re.compile('W' + _SIGNED),
}

PARAMETER_LETTERS = tuple(_PARAM_PATTERNS)


def _normalize(line: str) -> str:
    return line.strip().upper()


def is_command_line(line: str) -> bool:
    """
    Cheap pre-check used by the ingestor to count candidate lines before the
    full parse. Agrees exactly with parse_line() returning non-None.
    """
    text = _normalize(line)
    if not text or text.startswith(COMMENT_PREFIXES):
        return False
    return _COMMAND_RE.match(text) is not None


def _extract_params(code: str) -> Dict[str, float]:
    params = {}
    for letter, pattern in _PARAM_PATTERNS.items():
        match = pattern.search(code)
        if not match:
            continue
        try:
            value = float(int(match.group(1))) if letter == 'T' else float(match.group(1))
        except ValueError:
            # 파라미터 하나가 깨져도 명령 전체는 유지
            continue
        params[letter] = value
    return params


def parse_line(line: str, line_number: int) -> Optional[GCodeCommand]:
    """Parse a single G-code line.

    Returns None for blank lines, comment lines and lines without a leading
    G/M mnemonic. Never raises for malformed input.
    """
    raw = line.rstrip('\r\n')
    text = _normalize(raw)
    if not text or text.startswith(COMMENT_PREFIXES):
        return None

    match = _COMMAND_RE.match(text)
    if not match:
        return None

    command = match.group(1)
    # 인라인 주석 제거 후 파라미터 추출 (mnemonic 이후 부분만)
    code = text.split(';', 1)[0][match.end():]

    return GCodeCommand(
        command=command,
        params=_extract_params(code),
        line_number=line_number,
        raw=raw.strip(),
    )


def parse_lines(lines: Iterable[str], start_line: int = 1) -> List[GCodeCommand]:
    """Parse a batch of lines; line numbers are assigned sequentially from start_line."""
    commands = []
    for offset, line in enumerate(lines):
        command = parse_line(line, start_line + offset)
        if command is not None:
            commands.append(command)
    return commands
