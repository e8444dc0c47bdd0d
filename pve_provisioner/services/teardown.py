import logging

from pve_provisioner.errors import APIError, VMNotFound
from pve_provisioner.models import VMRef, iso_volid
from pve_provisioner.workflow import WorkflowContext, WorkflowRun


logger = logging.getLogger(__name__)

STOPPED = "stopped"


class TeardownWorkflow:
    name = "teardown"

    def __init__(self, ctx: WorkflowContext):
        self.ctx = ctx

    def run(self, vmid: int, storage: str) -> VMRef:
        run = WorkflowRun(self.name, 5)

        with run.step(f"Checking that VM {vmid} exists"):
            self.check_exists(vmid)
        with run.step(f"Resolving the name of VM {vmid}"):
            vm = VMRef(vmid=vmid, name=self.resolve_name(vmid))
        with run.step(f"Stopping VM {vmid}"):
            self.stop(vmid)
        with run.step(f"Deleting VM {vmid}"):
            data = self.ctx.client.delete_vm(self.ctx.node, vmid)
            self.ctx.await_if_task(data, f"delete VM {vmid}")
        with run.step(f"Deleting {vm.media_filename} from storage {storage}"):
            # the VM is already gone; a failure here leaves the media orphaned
            self.ctx.client.delete_volume(
                self.ctx.node, storage, iso_volid(storage, vm.media_filename)
            )

        run.complete(f"VM {vmid} and {vm.media_filename} deleted successfully")
        return vm

    def check_exists(self, vmid: int) -> str:
        status = self.ctx.client.vm_status(self.ctx.node, vmid).get("status")
        if not status:
            raise VMNotFound(vmid)
        logger.info("VM %s exists with status: %s", vmid, status)
        return status

    def resolve_name(self, vmid: int) -> str:
        name = self.ctx.client.get_config(self.ctx.node, vmid).get("name")
        if not name:
            raise APIError("retrieve the VM name", f"VM {vmid} has no name configured")
        logger.info("VM %s has name: %s", vmid, name)
        return name

    def stop(self, vmid: int) -> None:
        self.ctx.client.stop_vm(self.ctx.node, vmid)
        self.ctx.poller.wait_for_power_state(
            vmid,
            STOPPED,
            timeout=self.ctx.settings.power_timeout_sec,
            interval=self.ctx.settings.power_interval_sec,
        )
