"""
Proxmox VE Compute Adapter
==========================

Proxmox VE integration using direct REST API calls via httpx.

Authenticates with an API token (``PVEAPIToken=user@realm!tokenid=secret``).
Long-running operations (clone, start, stop, delete) return a task UPID;
this adapter polls the task until it stops so callers see a finished
operation or an error, never a half-applied one.

API Docs: https://pve.proxmox.com/pve-docs/api-viewer/
"""

import logging
import time
from typing import Any, Callable, Dict, Optional
from urllib.parse import quote

import httpx

from ..config import ProxmoxConfig
from ..exceptions import ComputeProvisioningError
from .base import ComputeProvisioner

logger = logging.getLogger(__name__)


class ProxmoxProvider(ComputeProvisioner):
    """
    Proxmox VE adapter.

    Features:
    - Full template clones with independent storage
    - Hardware, disk and cloud-init configuration
    - Power control with task completion tracking
    """

    PROVIDER_ID = "proxmox"
    PROVIDER_NAME = "Proxmox VE"

    def __init__(
        self,
        config: ProxmoxConfig,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize Proxmox provider.

        Args:
            config: Host, token and timeout settings
            transport: Optional httpx transport (tests inject a MockTransport)
            sleep: Sleep function used between task polls
        """
        self.config = config
        self._sleep = sleep
        self.client = httpx.Client(
            base_url=config.base_url,
            headers={
                "Authorization": f"PVEAPIToken={config.token_id}={config.token_secret}",
            },
            verify=config.verify_ssl,
            timeout=config.timeout,
            transport=transport,
        )

    def close(self) -> None:
        self.client.close()

    # =========================================
    # TRANSPORT
    # =========================================

    def _request(
        self,
        method: str,
        path: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Make an authenticated API request and return the ``data`` member."""
        try:
            response = self.client.request(method, path, data=data)
            response.raise_for_status()
            if not response.content:
                return None
            return response.json().get("data")

        except httpx.HTTPStatusError as e:
            error_msg = f"HTTP {e.response.status_code}"
            try:
                body = e.response.json()
                if body.get("errors"):
                    error_msg = f"{error_msg}: {body['errors']}"
                elif body.get("message"):
                    error_msg = f"{error_msg}: {body['message'].strip()}"
            except (ValueError, AttributeError):
                if e.response.reason_phrase:
                    error_msg = f"{error_msg}: {e.response.reason_phrase}"
            raise ComputeProvisioningError(
                f"Proxmox {method} {path} failed: {error_msg}",
                {"status_code": e.response.status_code, "path": path},
            )
        except httpx.TimeoutException as e:
            raise ComputeProvisioningError(
                f"Proxmox {method} {path} timed out after {self.config.timeout}s",
                {"path": path},
            ) from e
        except httpx.HTTPError as e:
            raise ComputeProvisioningError(
                f"Proxmox {method} {path} failed: {e}",
                {"path": path},
            ) from e
        except (ValueError, AttributeError) as e:
            # 2xx with a body that is not a JSON object
            raise ComputeProvisioningError(
                f"Proxmox {method} {path} returned an unreadable response: {e}",
                {"path": path},
            ) from e

    def _run_task(
        self,
        method: str,
        node: str,
        path: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Issue a request and, if Proxmox answers with a task UPID, wait for it."""
        result = self._request(method, path, data)
        if isinstance(result, str) and result.startswith("UPID:"):
            self._wait_for_task(node, result)

    def _wait_for_task(self, node: str, upid: str) -> None:
        """Poll a task until it stops. Fails on a non-OK exit or on deadline."""
        deadline = time.monotonic() + self.config.task_timeout
        path = f"/nodes/{node}/tasks/{quote(upid, safe='')}/status"

        while True:
            status = self._request("GET", path) or {}
            if not isinstance(status, dict):
                raise ComputeProvisioningError(
                    f"Proxmox returned an invalid status for task {upid}: {status!r}",
                    {"upid": upid},
                )
            if status.get("status") == "stopped":
                exit_status = status.get("exitstatus", "")
                if exit_status != "OK":
                    raise ComputeProvisioningError(
                        f"Proxmox task {upid} failed: {exit_status or 'unknown error'}",
                        {"upid": upid, "exitstatus": exit_status},
                    )
                return

            if time.monotonic() >= deadline:
                raise ComputeProvisioningError(
                    f"Proxmox task {upid} did not finish within {self.config.task_timeout}s",
                    {"upid": upid},
                )
            self._sleep(self.config.task_poll_interval)

    # =========================================
    # PROVISIONING
    # =========================================

    def next_instance_id(self, node: str) -> int:
        vmid = self._request("GET", f"/nodes/{node}/nextid")
        try:
            return int(vmid)
        except (TypeError, ValueError):
            raise ComputeProvisioningError(
                f"Proxmox returned an invalid next VMID: {vmid!r}",
                {"node": node},
            )

    def clone_template(self, node: str, template_id: int, new_id: int, name: str) -> None:
        logger.info(f"Cloning template {template_id} to VM {new_id} on {node}")
        self._run_task(
            "POST",
            node,
            f"/nodes/{node}/qemu/{template_id}/clone",
            {"newid": new_id, "name": name, "full": 1},
        )

    def configure_hardware(
        self,
        node: str,
        vmid: int,
        cores: int,
        memory_mib: int,
        network_config: str,
    ) -> None:
        self._run_task(
            "POST",
            node,
            f"/nodes/{node}/qemu/{vmid}/config",
            {"cores": cores, "memory": memory_mib, "net0": network_config},
        )

    def resize_disk(self, node: str, vmid: int, disk: str, size_gib: int) -> None:
        self._run_task(
            "PUT",
            node,
            f"/nodes/{node}/qemu/{vmid}/resize",
            {"disk": disk, "size": f"{size_gib}G"},
        )

    def configure_cloud_init(
        self,
        node: str,
        vmid: int,
        login_user: str,
        password: str,
        ssh_public_key: str,
        address_cidr: str,
        gateway: str,
    ) -> None:
        self._run_task(
            "POST",
            node,
            f"/nodes/{node}/qemu/{vmid}/config",
            {
                "ciuser": login_user,
                "cipassword": password,
                # Proxmox expects the key list itself to be URL-encoded
                "sshkeys": quote(ssh_public_key.strip(), safe=""),
                "ipconfig0": f"ip={address_cidr},gw={gateway}",
            },
        )

    # =========================================
    # POWER / LIFECYCLE
    # =========================================

    def start(self, node: str, vmid: int) -> None:
        logger.info(f"Starting VM {vmid} on {node}")
        self._run_task("POST", node, f"/nodes/{node}/qemu/{vmid}/status/start")

    def stop(self, node: str, vmid: int) -> None:
        logger.info(f"Stopping VM {vmid} on {node}")
        self._run_task("POST", node, f"/nodes/{node}/qemu/{vmid}/status/stop")

    def reboot(self, node: str, vmid: int) -> None:
        logger.info(f"Rebooting VM {vmid} on {node}")
        self._run_task("POST", node, f"/nodes/{node}/qemu/{vmid}/status/reboot")

    def destroy(self, node: str, vmid: int) -> None:
        logger.info(f"Destroying VM {vmid} on {node}")
        self._run_task("DELETE", node, f"/nodes/{node}/qemu/{vmid}")
