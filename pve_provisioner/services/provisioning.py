import logging
from contextlib import ExitStack

from pve_provisioner.errors import APIError, IdAllocationExhausted, ResizeFailed
from pve_provisioner.media import staged_media
from pve_provisioner.models import GeneratedMedia, VMRef, iso_volid
from pve_provisioner.schemas import ProvisionSpec
from pve_provisioner.workflow import WorkflowContext, WorkflowRun


logger = logging.getLogger(__name__)

MAX_ID_ATTEMPTS = 100
MEDIA_DEVICE = "ide2"


class ProvisioningWorkflow:
    name = "provision"

    def __init__(self, ctx: WorkflowContext, max_id_attempts: int = MAX_ID_ATTEMPTS):
        self.ctx = ctx
        self.max_id_attempts = max_id_attempts

    def run(self, spec: ProvisionSpec) -> VMRef:
        run = WorkflowRun(self.name, 6)

        with run.step("Allocating VM id"):
            vmid = self.allocate_vmid(spec.start_id)
        vm = VMRef(vmid=vmid, name=spec.name)

        with ExitStack() as stack:
            with run.step("Generating config drive media"):
                media = stack.enter_context(
                    staged_media(
                        vmid=vmid,
                        vm_name=spec.name,
                        user_data_path=spec.user_data_path,
                        storage=spec.iso_storage,
                        work_dir=self.ctx.settings.work_dir,
                    )
                )
            with run.step(f"Uploading {media.filename} to storage {spec.iso_storage}"):
                self.upload_media(media)

        with run.step(f"Cloning template {spec.template_id} to VM {vmid}"):
            self.clone(spec, vmid)
        with run.step(f"Resizing {spec.disk} by {spec.resize}"):
            self.resize(vmid, spec.disk, spec.resize)
        with run.step("Attaching config drive media"):
            self.attach_media(vmid, iso_volid(spec.iso_storage, vm.media_filename))

        run.complete(f"VM {vmid} ({spec.name}) created and configured successfully")
        return vm

    def allocate_vmid(self, start_id: int) -> int:
        # nextid only answers for free candidates; a concurrent run may take
        # an id between this probe and the clone
        for attempt in range(self.max_id_attempts):
            candidate = start_id + attempt
            vmid = self.ctx.client.next_id(candidate)
            if vmid is not None:
                logger.info("allocated VM id %s", vmid)
                return vmid
            logger.debug("VM id %d is taken", candidate)
        raise IdAllocationExhausted(start_id, self.max_id_attempts)

    def upload_media(self, media: GeneratedMedia) -> None:
        data = self.ctx.client.upload_iso(self.ctx.node, media.storage, media.local_path)
        self.ctx.await_if_task(data, f"upload {media.filename}")
        logger.info("uploaded %s", media.volid)

    def clone(self, spec: ProvisionSpec, vmid: int) -> None:
        data = self.ctx.client.clone_vm(self.ctx.node, spec.template_id, vmid, spec.name)
        self.ctx.await_if_task(data, f"clone {spec.template_id} to {vmid}")

    def resize(self, vmid: int, disk: str, size: str) -> None:
        try:
            data = self.ctx.client.resize_disk(self.ctx.node, vmid, disk, size)
        except APIError as exc:
            raise ResizeFailed(vmid=vmid, disk=disk, size=size, details=exc.details) from exc
        # a successful envelope without data still means the resize did not happen
        if data in (None, ""):
            raise ResizeFailed(
                vmid=vmid, disk=disk, size=size, details="response carried no data"
            )
        self.ctx.await_if_task(data, f"resize {disk} of VM {vmid}")
        logger.info("disk %s of VM %s grown by %s", disk, vmid, size)

    def attach_media(self, vmid: int, volid: str) -> None:
        data = self.ctx.client.update_config(
            self.ctx.node,
            vmid,
            {MEDIA_DEVICE: f"{volid},media=cdrom"},
            action="attach ISO to the VM",
        )
        self.ctx.await_if_task(data, f"attach {volid}")
        logger.info("attached %s as %s", volid, MEDIA_DEVICE)
