"""보안 로그 라인 정규화기.

하나의 원시 텍스트 라인을 최대 하나의 Observation으로 변환한다.
추출 규칙은 우선순위 순서대로 적용되며 처음 매칭된 규칙의 결과만 사용한다.

1. CEF 레코드 (CEF:0|...|확장 필드)
2. key=value 구조화 로그 (src=, dst=, dpt=, act=, proto= 및 별칭)
3. 방화벽 거부 로그 (Cisco ASA / FTD)
4. SSH 인증 실패 로그 (sshd "Failed password")
5. 일반 "DENY ... port N" 로그

규칙이 라인을 "점유"하면 (예: 구조화 로그에서 출발지를 찾았으나 포트가 없음)
하위 규칙으로 넘어가지 않고 None을 반환한다.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Callable

from scanwatcher.ingest.models import Observation
from scanwatcher.utils.network import parse_address

logger = logging.getLogger("scanwatcher.ingest.normalizer")

_IPV4 = r"\d{1,3}(?:\.\d{1,3}){3}"

# syslog 헤더: "<PRI>Jan 26 10:30:45 host ..." 또는 "<PRI>1 2024-01-26T10:30:45Z host ..."
_HOST_PREFIX_RE = re.compile(
    r"^(?:<\d{1,3}>)?"
    r"(?:"
    r"[A-Z][a-z]{2}\s+\d{1,2}\s+\d{2}:\d{2}:\d{2}"
    r"|(?:\d\s+)?\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(?:\.\d+)?(?:Z|[+-]\d{2}:?\d{2})?"
    r")\s+(?P<host>[^\s:]+):?\s+"
)

_CEF_RE = re.compile(r"CEF:\d+(?:\|(?:[^|\\]|\\.)*){6}\|(?P<ext>.*)$")
_CEF_EXT_RE = re.compile(r"(?P<key>\w+)=(?P<value>(?:[^=\\]|\\.)*?)(?=\s+\w+=|\s*$)")

_KV_VALUE = r"[\"']?(?P<value>[^\s,;\"']+)"
_KV_SOURCE_RE = re.compile(
    r"(?<![\w.])(?:src|source|src_ip|source_ip)=" + _KV_VALUE, re.IGNORECASE,
)
_KV_DEST_RE = re.compile(
    r"(?<![\w.])(?:dst|dest|destination|dst_ip|dest_ip)=" + _KV_VALUE, re.IGNORECASE,
)
_KV_PORT_RE = re.compile(
    r"(?<![\w.])(?:dpt|dport|dst_port|dest_port|destination_port)=[\"']?(?P<value>\d+)",
    re.IGNORECASE,
)
_KV_ACTION_RE = re.compile(r"(?<![\w.])(?:act|action)=" + _KV_VALUE, re.IGNORECASE)
_KV_PROTO_RE = re.compile(r"(?<![\w.])(?:proto|protocol)=" + _KV_VALUE, re.IGNORECASE)

# %ASA-4-106023: Deny tcp src outside:203.0.113.5/51234 dst inside:10.0.0.5/443 by ...
_ASA_ACL_RE = re.compile(
    r"%(?:ASA|FTD)-\d-\d+:.*?(?:Deny\s+(?P<proto>\w+)\s+)?"
    r"src\s+(?:[\w-]+:)?(?P<src>" + _IPV4 + r")(?:/\d+)?"
    r"\s+dst\s+(?:[\w-]+:)?(?P<dst>" + _IPV4 + r")/(?P<dpt>\d+)",
    re.IGNORECASE,
)
# %ASA-2-106001: Inbound TCP connection denied from 203.0.113.5/51234 to 10.0.0.5/22 ...
_ASA_CONN_RE = re.compile(
    r"%(?:ASA|FTD)-\d-\d+:.*?(?P<proto>TCP|UDP)?\s*connection denied from\s+"
    r"(?P<src>" + _IPV4 + r")/\d+\s+to\s+(?P<dst>" + _IPV4 + r")/(?P<dpt>\d+)",
    re.IGNORECASE,
)

# %ASA-6-106015: ... src 203.0.113.5 ... dst outside:10.0.0.5:8443 ...
_ASA_COLON_RE = re.compile(
    r"%(?:ASA|FTD)-\d-\d+:.*?\bsrc\s+(?:[\w-]+:)?(?P<src>" + _IPV4 + r")\b"
    r".*?\bdst\s+(?:[\w-]+:)?(?P<dst>" + _IPV4 + r"):(?P<dpt>\d+)",
    re.IGNORECASE,
)

_SSH_FAILED_RE = re.compile(
    r"Failed password for (?:invalid user )?\S+ from (?P<src>[0-9A-Fa-f:.]+) port \d+",
)

_DENY_RE = re.compile(
    r"\bDENY\b.*?(?P<src>" + _IPV4 + r").*?\bport\s+(?P<dpt>\d+)",
    re.IGNORECASE,
)

# sshd 로그의 "port N"은 클라이언트 출발지 포트이므로 목적지는 SSH 서비스 포트로 기록한다.
SSH_SERVICE_PORT = 22


@dataclass
class _Extract:
    """규칙이 라인에서 뽑아낸 필드 (검증 전)."""
    source:      str | None = None
    port:        str | None = None
    destination: str | None = None
    protocol:    str | None = None
    action:      str | None = None


def _origin_host(line: str) -> str | None:
    """syslog 스타일 타임스탬프+호스트 프리픽스에서 호스트명을 추출한다."""
    m = _HOST_PREFIX_RE.match(line)
    return m.group("host") if m else None


def _unescape_cef(value: str) -> str:
    """CEF 확장 값의 이스케이프를 해제한다."""
    return re.sub(r"\\(.)", lambda m: {"n": "\n", "r": "\r"}.get(m.group(1), m.group(1)), value).strip()


def _extract_cef(line: str) -> _Extract | None:
    m = _CEF_RE.search(line)
    if m is None:
        return None
    fields = {
        em.group("key").lower(): _unescape_cef(em.group("value"))
        for em in _CEF_EXT_RE.finditer(m.group("ext"))
    }
    return _Extract(
        source      = fields.get("src"),
        port        = fields.get("dpt"),
        destination = fields.get("dst"),
        protocol    = fields.get("proto"),
        action      = fields.get("act"),
    )


def _search(pattern: re.Pattern[str], line: str) -> str | None:
    m = pattern.search(line)
    return m.group("value") if m else None


def _extract_key_value(line: str) -> _Extract | None:
    source = _search(_KV_SOURCE_RE, line)
    if source is None:
        return None
    return _Extract(
        source      = source,
        port        = _search(_KV_PORT_RE, line),
        destination = _search(_KV_DEST_RE, line),
        protocol    = _search(_KV_PROTO_RE, line),
        action      = _search(_KV_ACTION_RE, line),
    )


def _extract_firewall_deny(line: str) -> _Extract | None:
    m = _ASA_ACL_RE.search(line) or _ASA_CONN_RE.search(line) or _ASA_COLON_RE.search(line)
    if m is None:
        return None
    return _Extract(
        source      = m.group("src"),
        port        = m.group("dpt"),
        destination = m.group("dst"),
        protocol    = (m.groupdict().get("proto") or "TCP").upper(),
        action      = "deny",
    )


def _extract_ssh_failure(line: str) -> _Extract | None:
    m = _SSH_FAILED_RE.search(line)
    if m is None:
        return None
    return _Extract(
        source   = m.group("src"),
        port     = str(SSH_SERVICE_PORT),
        protocol = "SSH",
        action   = "auth_failed",
    )


def _extract_generic_deny(line: str) -> _Extract | None:
    m = _DENY_RE.search(line)
    if m is None:
        return None
    return _Extract(
        source   = m.group("src"),
        port     = m.group("dpt"),
        protocol = "TCP",
        action   = "deny",
    )


# 우선순위 순서: 구조화 포맷이 먼저, 벤더 패턴은 폴백
DEFAULT_RULES: tuple[tuple[str, Callable[[str], _Extract | None]], ...] = (
    ("cef",           _extract_cef),
    ("key_value",     _extract_key_value),
    ("firewall_deny", _extract_firewall_deny),
    ("ssh_failure",   _extract_ssh_failure),
    ("generic_deny",  _extract_generic_deny),
)


class LogNormalizer:
    """원시 로그 라인을 Observation으로 변환하는 무상태 정규화기.

    내부 상태가 없으므로 여러 워커 스레드에서 동시에 호출해도 안전하다.
    clock은 테스트에서 시각을 고정하기 위해 주입할 수 있다.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._rules = DEFAULT_RULES

    @property
    def rule_names(self) -> list[str]:
        return [name for name, _ in self._rules]

    def normalize(self, line: str, timestamp: float | None = None) -> Observation | None:
        """한 줄을 정규화한다. 필수 필드가 없거나 형식이 깨진 라인은 None."""
        if not line:
            return None
        line = line.strip()
        if not line:
            return None

        for name, rule in self._rules:
            extract = rule(line)
            if extract is None:
                continue
            obs = self._build(extract, line, timestamp)
            if obs is None:
                logger.debug("Rule %s claimed line but required fields missing", name)
            return obs
        return None

    def _build(
        self, extract: _Extract, line: str, timestamp: float | None,
    ) -> Observation | None:
        """추출 결과를 검증하여 Observation을 만든다."""
        source = parse_address(extract.source)
        if source is None or extract.port is None:
            return None
        try:
            port = int(extract.port)
        except ValueError:
            return None
        if not 0 <= port <= 65535:
            return None

        destination = parse_address(extract.destination)
        return Observation(
            timestamp           = self._clock() if timestamp is None else timestamp,
            source_address      = str(source),
            destination_port    = port,
            protocol            = extract.protocol.upper() if extract.protocol else None,
            action              = extract.action.lower() if extract.action else None,
            origin_host         = _origin_host(line),
            destination_address = str(destination) if destination is not None else None,
        )
