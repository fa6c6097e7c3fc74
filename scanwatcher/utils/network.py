"""IP 주소 파싱 및 내부 대역 판별 헬퍼."""

from __future__ import annotations

import ipaddress
from functools import lru_cache

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address

# 내부 트래픽으로 간주하는 대역 (RFC1918 + 루프백 + 링크로컬 + IPv6 대응 대역)
INTERNAL_NETWORKS: tuple[ipaddress.IPv4Network | ipaddress.IPv6Network, ...] = (
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("169.254.0.0/16"),
    ipaddress.ip_network("::1/128"),
    ipaddress.ip_network("fe80::/10"),
    ipaddress.ip_network("fc00::/7"),
)


def parse_address(value: str | None) -> IPAddress | None:
    """문자열을 IP 주소로 파싱한다. 유효하지 않으면 None을 반환한다."""
    if not value:
        return None
    try:
        return ipaddress.ip_address(value.strip())
    except ValueError:
        return None


@lru_cache(maxsize=65536)
def is_internal(ip_str: str) -> bool:
    """IP가 INTERNAL_NETWORKS 대역에 포함되는지 CIDR 포함 관계로 검사한다.

    문자열 프리픽스 비교가 아니므로 172.160.0.1 같은 주소는 외부로 판정된다.
    IPv4-mapped IPv6 주소(::ffff:10.0.0.1)는 IPv4로 풀어서 검사한다.
    파싱할 수 없는 값은 False.
    """
    addr = parse_address(ip_str)
    if addr is None:
        return False
    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None:
        addr = addr.ipv4_mapped
    return any(
        addr.version == network.version and addr in network
        for network in INTERNAL_NETWORKS
    )
