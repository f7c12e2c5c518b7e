# iKuai Bypass Updater
# Author: iKuai Bypass Updater contributors
# License: MIT

"""Replace the router's bypass rules with freshly fetched ones.

The protocol is fixed:

1. delete phase: remove this tool's rules category by category, in
   CATEGORY_ORDER;
2. add phase: add the new records, again in CATEGORY_ORDER.

Every delete and every add is best-effort. A failure is logged, recorded as an
OperationResult and the run moves on to the next call. A failed delete
followed by a successful add leaves old and new rules side by side in that
category until the next run.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional

from bypass_sources import FetchedRules
from ikuai_api import CUSTOM_ISP, IP_GROUP, STREAM_DOMAIN, STREAM_IPPORT, IKuaiClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Category:
    key: str
    func_name: str
    label: str


CATEGORY_ORDER = (
    Category('custom-isp', CUSTOM_ISP, 'custom ISP'),
    Category('ip-group', IP_GROUP, 'IP group'),
    Category('stream-domain', STREAM_DOMAIN, 'domain stream'),
    Category('stream-ipport', STREAM_IPPORT, 'port stream'),
)

_CATEGORIES = {c.key: c for c in CATEGORY_ORDER}


@dataclass(frozen=True)
class OperationResult:
    category: str
    action: str
    target: str
    ok: bool
    error: Optional[str] = None
    skipped: bool = False


def _attempt(results: List[OperationResult], category: Category, action: str,
             target: str, fn: Callable, *args) -> bool:
    try:
        fn(*args)
    except Exception as e:
        logger.error(f"🚫 Failed to {action} {category.label} '{target}': {e}")
        results.append(OperationResult(category.key, action, target, False, str(e)))
        return False
    results.append(OperationResult(category.key, action, target, True))
    return True


def delete_phase(client: IKuaiClient, categories: Optional[Iterable[str]] = None) -> List[OperationResult]:
    """Delete this tool's rules in every category listed (all by default)."""
    wanted = set(_CATEGORIES) if categories is None else set(categories)
    results = []

    for category in CATEGORY_ORDER:
        if category.key not in wanted:
            logger.info(f"⏭️ Keeping existing {category.label} rules (no sources configured)")
            results.append(OperationResult(category.key, 'delete', category.func_name, True, skipped=True))
            continue

        def delete(cat=category):
            count = client.delete_bypass(cat.func_name)
            logger.info(f"🧹 Removed {count} old {cat.label} rule(s)")

        _attempt(results, category, 'delete', category.func_name, delete)

    return results


def add_custom_isps(client: IKuaiClient, rules: FetchedRules) -> List[OperationResult]:
    category = _CATEGORIES['custom-isp']
    results = []
    for record in rules.custom_isp:
        added = 0
        for chunk in record.chunks:
            added += _attempt(results, category, 'add', record.name,
                              client.add_custom_isp, record.name, ','.join(chunk))
        logger.info(f"🛠️ Custom ISP '{record.name}': {added}/{len(record.chunks)} chunk(s) added")
    return results


def add_ip_groups(client: IKuaiClient, rules: FetchedRules) -> List[OperationResult]:
    category = _CATEGORIES['ip-group']
    results = []
    for record in rules.ip_group:
        added = 0
        for index, chunk in enumerate(record.chunks):
            name = record.chunk_name(index)
            added += _attempt(results, category, 'add', name,
                              client.add_ip_group, name, ','.join(chunk))
        logger.info(f"🛠️ IP group '{record.name}': {added}/{len(record.chunks)} chunk(s) added")
    return results


def add_stream_domains(client: IKuaiClient, rules: FetchedRules) -> List[OperationResult]:
    category = _CATEGORIES['stream-domain']
    results = []
    for record in rules.stream_domain:
        added = 0
        for chunk in record.chunks:
            added += _attempt(results, category, 'add', record.interface,
                              client.add_stream_domain, record.interface, record.src_addr, ','.join(chunk))
        logger.info(f"🛠️ Domain stream '{record.interface}': {added}/{len(record.chunks)} chunk(s) added")
    return results


def add_stream_ipports(client: IKuaiClient, rules: FetchedRules) -> List[OperationResult]:
    category = _CATEGORIES['stream-ipport']
    results = []
    for record in rules.stream_ipport:
        if not record.ip_groups:
            logger.warning(f"⏭️ Skipping port stream '{record.interface}': no IP groups to route")
            results.append(OperationResult(category.key, 'add', record.interface, True, skipped=True))
            continue
        if _attempt(results, category, 'add', record.interface, client.add_stream_ipport,
                    record.type, record.interface, ','.join(record.ip_groups),
                    record.src_addr, record.nexthop):
            logger.info(f"🛠️ Port stream '{record.interface}' added")
    return results


_ADDERS = {
    'custom-isp': add_custom_isps,
    'ip-group': add_ip_groups,
    'stream-domain': add_stream_domains,
    'stream-ipport': add_stream_ipports,
}


def add_phase(client: IKuaiClient, rules: FetchedRules) -> List[OperationResult]:
    results = []
    for category in CATEGORY_ORDER:
        results.extend(_ADDERS[category.key](client, rules))
    return results


def reconcile(client: IKuaiClient, rules: FetchedRules,
              categories: Optional[Iterable[str]] = None) -> List[OperationResult]:
    """Run the delete phase, then the add phase. Never raises for API failures."""
    logger.info(f"{'='*60}")
    logger.info("♻️ Replacing bypass rules")
    logger.info(f"{'='*60}")

    results = delete_phase(client, categories)
    results.extend(add_phase(client, rules))
    return results
