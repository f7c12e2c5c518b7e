# iKuai Bypass Updater
# Author: iKuai Bypass Updater contributors
# License: MIT

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

import requests

from bypass_config import (
    Config,
    CustomIspSource,
    DEFAULT_REQUEST_TIMEOUT,
    IpGroupSource,
    StreamDomainSource,
    StreamIpPortSource,
)
from ikuai_api import IKuaiClient, IKuaiError

logger = logging.getLogger(__name__)

# Maximum entries the router accepts per rule
CUSTOM_ISP_CHUNK_SIZE = 5000
IP_GROUP_CHUNK_SIZE = 1000
STREAM_DOMAIN_CHUNK_SIZE = 1000


class FetchError(Exception):
    """Raised when a source cannot be retrieved; aborts the whole fetch stage."""

    def __init__(self, source: str, url: str, reason: str):
        self.source = source
        self.url = url
        self.reason = reason
        super().__init__(f"{source} ({url}): {reason}")


@dataclass(frozen=True)
class CustomIspRecord:
    name: str
    chunks: List[List[str]]


@dataclass(frozen=True)
class IpGroupRecord:
    name: str
    chunks: List[List[str]]

    def chunk_name(self, index: int) -> str:
        """The router needs a distinct group name per chunk."""
        return f"{self.name}_{index}"


@dataclass(frozen=True)
class StreamDomainRecord:
    interface: str
    src_addr: str
    chunks: List[List[str]]


@dataclass(frozen=True)
class StreamIpPortRecord:
    type: str
    interface: str
    nexthop: str
    src_addr: str
    ip_groups: List[str]


@dataclass
class FetchedRules:
    custom_isp: List[CustomIspRecord] = field(default_factory=list)
    ip_group: List[IpGroupRecord] = field(default_factory=list)
    stream_domain: List[StreamDomainRecord] = field(default_factory=list)
    stream_ipport: List[StreamIpPortRecord] = field(default_factory=list)


def partition(seq: Sequence[str], size: int) -> List[List[str]]:
    """Split a sequence into ordered chunks of at most `size` items.

    Every chunk but the last holds exactly `size` items. At least one chunk
    is always returned, so an empty sequence yields [[]].
    """
    if size <= 0:
        raise ValueError(f"Chunk size must be positive, got {size}")

    quantity, remainder = divmod(len(seq), size)
    chunks = [list(seq[i * size:(i + 1) * size]) for i in range(quantity)]
    if remainder or not quantity:
        chunks.append(list(seq[quantity * size:]))
    return chunks


def split_lines(content: str) -> List[str]:
    return content.splitlines()


def remove_ipv6(lines: List[str]) -> List[str]:
    """Strip entries, dropping blanks and anything IPv6 (contains a colon)."""
    result = []
    for line in lines:
        line = line.strip()
        if line and ':' not in line:
            result.append(line)
    return result


def fetch_list(url: str, source: str, timeout: int = DEFAULT_REQUEST_TIMEOUT,
               http_get: Optional[Callable[..., requests.Response]] = None) -> str:
    """Download a list and return its body text. Raises FetchError."""
    http_get = http_get or requests.get
    try:
        # The body is only downloaded when .text is read, inside this try
        with http_get(url, timeout=timeout, stream=True) as response:
            if response.status_code != 200:
                raise FetchError(source, url, f"HTTP status {response.status_code}")
            content = response.text
    except requests.RequestException as e:
        raise FetchError(source, url, f"request failed: {e}") from e

    logger.info(f"🔗 Fetched {source} from {url}")
    return content


def fetch_custom_isps(sources: List[CustomIspSource], timeout: int = DEFAULT_REQUEST_TIMEOUT,
                      http_get=None) -> List[CustomIspRecord]:
    records = []
    for src in sources:
        ips = remove_ipv6(split_lines(fetch_list(src.url, src.name, timeout, http_get)))
        chunks = partition(ips, CUSTOM_ISP_CHUNK_SIZE)
        logger.info(f"  🎯 Custom ISP '{src.name}': {len(ips):,} entries in {len(chunks)} chunk(s)")
        records.append(CustomIspRecord(name=src.name, chunks=chunks))
    return records


def fetch_ip_groups(sources: List[IpGroupSource], timeout: int = DEFAULT_REQUEST_TIMEOUT,
                    http_get=None) -> List[IpGroupRecord]:
    records = []
    for src in sources:
        ips = remove_ipv6(split_lines(fetch_list(src.url, src.name, timeout, http_get)))
        chunks = partition(ips, IP_GROUP_CHUNK_SIZE)
        logger.info(f"  🎯 IP group '{src.name}': {len(ips):,} entries in {len(chunks)} chunk(s)")
        records.append(IpGroupRecord(name=src.name, chunks=chunks))
    return records


def fetch_stream_domains(sources: List[StreamDomainSource], timeout: int = DEFAULT_REQUEST_TIMEOUT,
                         http_get=None) -> List[StreamDomainRecord]:
    records = []
    for src in sources:
        domains = split_lines(fetch_list(src.url, src.url, timeout, http_get))
        chunks = partition(domains, STREAM_DOMAIN_CHUNK_SIZE)
        logger.info(f"  🎯 Domain stream '{src.interface}': {len(domains):,} entries in {len(chunks)} chunk(s)")
        records.append(StreamDomainRecord(interface=src.interface, src_addr=src.src_addr, chunks=chunks))
    return records


def fetch_stream_ipports(sources: List[StreamIpPortSource], client: IKuaiClient) -> List[StreamIpPortRecord]:
    """Resolve the IP groups each port rule refers to through the router."""
    records = []
    for src in sources:
        ip_groups = []
        for name in src.ip_group_names():
            try:
                ip_groups.extend(client.get_ip_group_names(name))
            except (IKuaiError, requests.RequestException) as e:
                raise FetchError(name, client.base_url, f"could not resolve IP group: {e}") from e

        if not ip_groups:
            logger.warning(f"  ⚠️ Port stream '{src.interface}': no IP groups found for '{src.ip_group}'")
        else:
            logger.info(f"  🎯 Port stream '{src.interface}': {len(ip_groups)} IP group(s)")
        records.append(StreamIpPortRecord(
            type=src.type,
            interface=src.interface,
            nexthop=src.nexthop,
            src_addr=src.src_addr,
            ip_groups=ip_groups,
        ))
    return records


def fetch_all(config: Config, client: IKuaiClient, http_get=None) -> FetchedRules:
    """Fetch every category. Any FetchError aborts the whole stage."""
    timeout = config.request_timeout
    return FetchedRules(
        custom_isp=fetch_custom_isps(config.custom_isp, timeout, http_get),
        ip_group=fetch_ip_groups(config.ip_group, timeout, http_get),
        stream_domain=fetch_stream_domains(config.stream_domain, timeout, http_get),
        stream_ipport=fetch_stream_ipports(config.stream_ipport, client),
    )
