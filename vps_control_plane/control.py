"""
Instance Control Gateway
========================

Owner-checked power actions (start / stop / reboot) on provisioned VPSes.
"""

import asyncio
import logging
from typing import Union

from .exceptions import ComputeProvisioningError, ControlFailed, Forbidden
from .models import PowerAction, ServiceRecord, ServiceStatus
from .providers.base import ComputeProvisioner
from .records import ServiceRecordStore

logger = logging.getLogger(__name__)

# Status recorded after a successful action; reboot leaves it alone
STATUS_AFTER_ACTION = {
    PowerAction.START: ServiceStatus.RUNNING,
    PowerAction.STOP: ServiceStatus.STOPPED,
}


class ControlGateway:
    """Forwards power actions to the hypervisor for the owning user only."""

    def __init__(self, store: ServiceRecordStore, compute: ComputeProvisioner):
        self.store = store
        self.compute = compute

    async def control_instance(
        self,
        vmid: int,
        requester_id: str,
        action: Union[PowerAction, str],
    ) -> ServiceRecord:
        """
        Apply a power action to ``vmid`` on behalf of ``requester_id``.

        Raises:
            ValueError: unknown action
            Forbidden: no such instance, or owned by someone else
            ControlFailed: the hypervisor rejected the action
        """
        action = PowerAction(action)

        service = await self.store.get_service_for_owner(vmid, requester_id)
        if service is None or not service.node:
            # Same answer for "missing" and "not yours"
            raise Forbidden("VPS not found or access denied", {"vmid": vmid})

        log_extra = {"service_id": service.id, "vmid": vmid, "node": service.node}
        handler = getattr(self.compute, action.value)

        try:
            await asyncio.to_thread(handler, service.node, vmid)
        except ComputeProvisioningError as e:
            logger.error(f"{action.value} of VM {vmid} failed: {e}", extra=log_extra)
            raise ControlFailed(
                f"Failed to {action.value} VM {vmid}",
                {"vmid": vmid, "action": action.value},
            ) from e

        new_status = STATUS_AFTER_ACTION.get(action)
        if new_status is not None:
            await self.store.set_service_status(service.id, new_status)
            service.status = new_status

        logger.info(f"VM {vmid} {action.value} requested by {requester_id}", extra=log_extra)
        return service
