# iKuai Bypass Updater
# Author: iKuai Bypass Updater contributors
# License: MIT

import base64
import hashlib
import json
import logging
import re
from typing import Dict, List, Optional

import requests

from bypass_config import DEFAULT_REQUEST_TIMEOUT

logger = logging.getLogger(__name__)

PAGE_SIZE = 100

# Every entry this tool creates is tagged so delete-all only touches our own rules
COMMENT = 'IKUAI_BYPASS'

LOGIN_SUCCESS = 10000
CALL_SUCCESS = 30000

# iKuai func_name per rule category
CUSTOM_ISP = 'custom_isp'
IP_GROUP = 'ipgroup'
STREAM_DOMAIN = 'stream_domain'
STREAM_IPPORT = 'stream_ipport'


class IKuaiError(Exception):
    """Raised when the router rejects a request or answers unexpectedly."""


class LoginError(IKuaiError):
    """Raised when authentication against the router fails."""


def encode_credentials(username: str, password: str) -> Dict[str, str]:
    """Build the login payload the iKuai web UI sends."""
    return {
        "username": username,
        "passwd": hashlib.md5(password.encode('utf-8')).hexdigest(),
        "pass": base64.b64encode(f"salt_11{password}".encode('utf-8')).decode('ascii'),
        "remember_password": "",
    }


def check_api_response(response: requests.Response, action: str, expected: int) -> Dict:
    """Validate API response and return JSON data."""
    if response.status_code != 200:
        logger.debug(f"Error {action}: {response.status_code} - {response.text}")
        raise IKuaiError(f"API error during {action}: HTTP {response.status_code}")

    try:
        data = response.json()
    except ValueError as e:
        raise IKuaiError(f"API returned non-JSON body during {action}") from e

    if not isinstance(data, dict) or data.get('Result') != expected:
        logger.debug(f"Unexpected result during {action}: {json.dumps(data, ensure_ascii=False)}")
        err_msg = data.get('ErrMsg') if isinstance(data, dict) else None
        raise IKuaiError(f"API returned failure during {action}: {err_msg or data}")

    return data


def _chunk_index(group_name: str, name: str) -> Optional[int]:
    if group_name == name:
        return -1
    match = re.fullmatch(re.escape(name) + r'_(\d+)', group_name)
    if match:
        return int(match.group(1))
    return None


class IKuaiClient:
    """Authenticated session against one iKuai router.

    The cookie set by login lives on the underlying requests.Session; nothing
    else on the client changes after login.
    """

    def __init__(self, base_url: str, timeout: int = DEFAULT_REQUEST_TIMEOUT,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})

    def api_request(self, path: str, payload: Dict) -> requests.Response:
        """POST a JSON payload to the router. Transport errors propagate."""
        url = f"{self.base_url}{path}"
        return self.session.post(url, json=payload, timeout=self.timeout)

    def login(self, username: str, password: str) -> None:
        response = self.api_request('/Action/login', encode_credentials(username, password))
        try:
            check_api_response(response, f"login as {username}", LOGIN_SUCCESS)
        except IKuaiError as e:
            raise LoginError(str(e)) from e
        logger.info(f"🔑 Logged in to {self.base_url} as {username}")

    def call(self, func_name: str, action: str, param: Dict) -> Dict:
        """Invoke one /Action/call function and return its Data section."""
        payload = {"func_name": func_name, "action": action, "param": param}
        response = self.api_request('/Action/call', payload)
        data = check_api_response(response, f"{func_name}.{action}", CALL_SUCCESS)
        result = data.get('Data')
        if result is None:
            return {}
        if not isinstance(result, dict):
            raise IKuaiError(f"API returned malformed Data during {func_name}.{action}: {result!r}")
        return result

    def show_all(self, func_name: str, finds: str = 'comment', keywords: str = COMMENT) -> List[Dict]:
        """Fetch all entries of a function matching a keyword search."""
        all_items = []
        start = 0

        while True:
            param = {
                "TYPE": "total,data",
                "limit": f"{start},{PAGE_SIZE}",
                "ORDER_BY": "",
                "ORDER": "",
                "FINDS": finds,
                "KEYWORDS": keywords,
            }
            data = self.call(func_name, 'show', param)

            items = data.get('data') or []
            if not isinstance(items, list) or not all(isinstance(i, dict) for i in items):
                raise IKuaiError(f"API returned malformed entry list during {func_name}.show")
            all_items.extend(items)

            try:
                total = int(data.get('total') or 0)
            except (TypeError, ValueError) as e:
                raise IKuaiError(f"API returned malformed total during {func_name}.show: "
                                 f"{data.get('total')!r}") from e
            start += len(items)
            if start >= total or not items:
                break

        logger.debug(f"Fetched {len(all_items)} {func_name} entries")
        return all_items

    def delete_bypass(self, func_name: str) -> int:
        """Delete every entry of func_name created by this tool. Returns the count."""
        entries = [e for e in self.show_all(func_name) if e.get('comment') == COMMENT]
        if not entries:
            return 0

        if any('id' not in e for e in entries):
            raise IKuaiError(f"API returned {func_name} entries without an id")
        ids = ','.join(str(e['id']) for e in entries)
        self.call(func_name, 'del', {"id": ids})
        return len(entries)

    def add_custom_isp(self, name: str, ipgroup: str) -> None:
        self.call(CUSTOM_ISP, 'add', {
            "name": name,
            "ipgroup": ipgroup,
            "comment": COMMENT,
        })

    def add_ip_group(self, name: str, addr_pool: str) -> None:
        self.call(IP_GROUP, 'add', {
            "group_name": name,
            "addr_pool": addr_pool,
            "comment": COMMENT,
            "type": 0,
            "newRow": True,
        })

    def add_stream_domain(self, interface: str, src_addr: str, domain: str) -> None:
        self.call(STREAM_DOMAIN, 'add', {
            "enabled": "yes",
            "interface": interface,
            "src_addr": src_addr,
            "domain": domain,
            "comment": COMMENT,
            "week": "1234567",
            "time": "00:00-23:59",
        })

    def add_stream_ipport(self, type_: str, interface: str, dst_addr: str,
                          src_addr: str, nexthop: str) -> None:
        self.call(STREAM_IPPORT, 'add', {
            "enabled": "yes",
            "type": type_,
            "interface": interface,
            "nexthop": nexthop,
            "src_addr": src_addr,
            "dst_addr": dst_addr,
            "comment": COMMENT,
            "mode": 0,
            "protocol": "tcp+udp",
            "src_port": "",
            "dst_port": "",
            "week": "1234567",
            "time": "00:00-23:59",
        })

    def get_ip_group_names(self, name: str) -> List[str]:
        """Names of the bypass IP groups that make up `name`, in chunk order.

        IP groups are stored as name_0, name_1, ...; a group named exactly
        `name` is also accepted.
        """
        matches = []
        for entry in self.show_all(IP_GROUP, finds='group_name', keywords=name):
            group_name = entry.get('group_name', '')
            index = _chunk_index(group_name, name)
            if index is not None and entry.get('comment') == COMMENT:
                matches.append((index, group_name))
        return [group_name for _, group_name in sorted(matches)]
