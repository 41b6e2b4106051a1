"""
OVHcloud Virtual MAC Adapter
============================

Creates and removes virtual MACs on OVH failover IP blocks using direct
REST API calls via httpx.

Bridged Proxmox guests on OVH dedicated servers only receive traffic for a
failover IP when their NIC carries the virtual MAC OVH bound to that IP.

Every call is signed with the application secret and consumer key:

    X-Ovh-Signature = "$1$" + sha1(secret+consumer+METHOD+url+body+timestamp)

API Docs: https://api.ovh.com/console/
"""

import hashlib
import json
import logging
import time
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

from ..config import OVHConfig
from ..exceptions import NetworkProvisioningError
from .base import NetworkIdentityProvisioner

logger = logging.getLogger(__name__)


class OVHProvider(NetworkIdentityProvisioner):
    """OVHcloud virtual MAC allocator."""

    PROVIDER_ID = "ovh"
    PROVIDER_NAME = "OVHcloud"

    # Virtual MAC type accepted by Proxmox/KVM guests
    VMAC_TYPE = "ovh"

    def __init__(self, config: OVHConfig, transport: Optional[httpx.BaseTransport] = None):
        """
        Initialize OVH provider.

        Args:
            config: Endpoint, application credentials and timeout
            transport: Optional httpx transport (tests inject a MockTransport)
        """
        self.config = config
        self.endpoint = config.endpoint.rstrip("/")
        self.client = httpx.Client(timeout=config.timeout, transport=transport)
        self._time_delta: Optional[int] = None

    def close(self) -> None:
        self.client.close()

    # =========================================
    # SIGNING
    # =========================================

    def _get_time_delta(self) -> int:
        """Offset between OVH server time and local time, fetched once."""
        if self._time_delta is None:
            response = self.client.get(f"{self.endpoint}/auth/time")
            response.raise_for_status()
            self._time_delta = int(response.json()) - int(time.time())
        return self._time_delta

    def _sign(self, method: str, url: str, body: str, timestamp: str) -> str:
        payload = "+".join([
            self.config.application_secret,
            self.config.consumer_key,
            method,
            url,
            body,
            timestamp,
        ])
        return "$1$" + hashlib.sha1(payload.encode("utf-8")).hexdigest()

    # =========================================
    # TRANSPORT
    # =========================================

    def _request(self, method: str, path: str, data: Optional[Dict[str, Any]] = None) -> Any:
        """Make a signed API request."""
        url = f"{self.endpoint}{path}"
        body = json.dumps(data) if data is not None else ""

        try:
            timestamp = str(int(time.time()) + self._get_time_delta())
            headers = {
                "X-Ovh-Application": self.config.application_key,
                "X-Ovh-Consumer": self.config.consumer_key,
                "X-Ovh-Timestamp": timestamp,
                "X-Ovh-Signature": self._sign(method, url, body, timestamp),
            }
            if body:
                headers["Content-Type"] = "application/json"

            response = self.client.request(method, url, content=body or None, headers=headers)
            response.raise_for_status()

            if response.content:
                return response.json()
            return None

        except httpx.HTTPStatusError as e:
            error_msg = f"HTTP {e.response.status_code}"
            try:
                error_data = e.response.json()
                if error_data.get("message"):
                    error_msg = f"{error_msg}: {error_data['message']}"
            except (ValueError, AttributeError):
                pass
            raise NetworkProvisioningError(
                f"OVH {method} {path} failed: {error_msg}",
                {"status_code": e.response.status_code, "path": path},
            )
        except httpx.TimeoutException as e:
            raise NetworkProvisioningError(
                f"OVH {method} {path} timed out after {self.config.timeout}s",
                {"path": path},
            ) from e
        except httpx.HTTPError as e:
            raise NetworkProvisioningError(
                f"OVH {method} {path} failed: {e}",
                {"path": path},
            ) from e
        except (ValueError, TypeError) as e:
            # Unparsable JSON, or a non-numeric /auth/time reply
            raise NetworkProvisioningError(
                f"OVH {method} {path} returned an unreadable response: {e}",
                {"path": path},
            ) from e

    # =========================================
    # VIRTUAL MAC
    # =========================================

    def create_virtual_identity(self, block: str, address: str, label: str) -> str:
        # "1.2.3.0/29" must travel as "1.2.3.0%2F29"
        path = f"/ip/{quote(block, safe='')}/virtualMac"
        result = self._request("POST", path, {
            "ipAddress": address,
            "type": self.VMAC_TYPE,
            "virtualMachineName": label,
        })

        mac = result.get("macAddress") if isinstance(result, dict) else None
        if not mac:
            raise NetworkProvisioningError(
                f"OVH did not return a MAC address for {address}",
                {"block": block, "address": address},
            )

        logger.info(f"Created virtual MAC {mac} for {address}")
        return mac

    def destroy_virtual_identity(self, block: str, mac: str) -> None:
        path = f"/ip/{quote(block, safe='')}/virtualMac/{quote(mac, safe='')}"
        self._request("DELETE", path)
        logger.info(f"Deleted virtual MAC {mac} from {block}")
