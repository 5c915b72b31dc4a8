"""Lifecycle state machine for one validated command.

The orchestrator drives the storage components in the order a command
needs and keeps a :class:`MountSession` recording what is attached and
mounted. Every failure, including an operator interrupt, goes through
:meth:`Orchestrator.teardown`:

    - an incomplete ``<image>.gz.tmp`` is removed when compression was
      running, otherwise
    - the image is unmounted and its loop device detached if the session
      believes either is active.

Interrupts are cooperative. SIGINT/SIGTERM only mark the
:class:`CancellationToken`; the external program currently running is
waited for, and the token is checked at every state transition. No state is
resumed on the next run: the dispatcher rediscovers bindings and mounts.
"""

from __future__ import annotations

import signal
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from sdbackup.domain.models import BackupConfig, Command, State
from sdbackup.logging import LoggerFactory, operation_context
from sdbackup.storage import compression, image as image_store, loop
from sdbackup.storage.commands import run_checked_command
from sdbackup.storage.exceptions import OperationInterruptedError, ValidationError
from sdbackup.storage.format import (
    fetch_bootloader_assets,
    initialize_disk,
    resize_partition,
)
from sdbackup.storage.identity import FSCK_ACCEPT_CODES, clone_identity
from sdbackup.storage.mount import MountSession
from sdbackup.storage.sync import run_sync


log = LoggerFactory.for_system()

INTERRUPT_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class CancellationToken:
    """Records an operator interrupt for the orchestrator to act on."""

    def __init__(self) -> None:
        self.signum: Optional[int] = None

    @property
    def cancelled(self) -> bool:
        return self.signum is not None

    def cancel(self, signum: int = signal.SIGINT, _frame=None) -> None:
        self.signum = signum

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise OperationInterruptedError()

    @contextmanager
    def installed(self, signals=INTERRUPT_SIGNALS) -> Iterator[CancellationToken]:
        """Route ``signals`` to :meth:`cancel` for the duration of the block."""
        previous = {signum: signal.signal(signum, self.cancel) for signum in signals}
        try:
            yield self
        finally:
            for signum, handler in previous.items():
                signal.signal(signum, handler)


class Orchestrator:
    """Runs one command against one image."""

    def __init__(self, config: BackupConfig, token: Optional[CancellationToken] = None):
        self.config = config
        self.token = token or CancellationToken()
        self.state = State.IDLE
        # evaluated once: the image exists after creation
        self.creating = config.wants_creation
        self.session: Optional[MountSession] = None
        if config.binding is not None:
            self.session = MountSession(
                config.binding,
                config.mount_dir,
                user_supplied=config.mount_dir_user_supplied,
                attached=config.command.reuses_binding,
            )

    def _advance(self, state: State) -> None:
        self.token.raise_if_cancelled()
        log.debug(f"{self.state.value} -> {state.value}")
        self.state = state

    def _require_session(self) -> MountSession:
        if self.session is None:
            raise ValidationError(f"No loop device resolved for {self.config.image}")
        return self.session

    def run(self) -> State:
        handler = getattr(self, f"_run_{self.config.command.value}")
        with operation_context(self.config.command.value, image=str(self.config.image)):
            try:
                self._advance(State.VALIDATING)
                handler()
                self._advance(State.DONE)
            except Exception as error:
                self.state = State.ABORTED
                if self.token.cancelled:
                    log.warning("Interrupt detected, cleaning up")
                self.teardown()
                if self.token.cancelled and not isinstance(
                    error, OperationInterruptedError
                ):
                    raise OperationInterruptedError() from error
                raise
        return self.state

    def teardown(self) -> None:
        """Undo whatever is still active after a failure; never raises."""
        if self.config.wants_compression and compression.has_partial_output(
            self.config.image
        ):
            compression.discard_partial_output(self.config.image)
        elif self.session is not None and self.session.active:
            self.session.teardown()
        self._report_log()

    def _report_log(self) -> None:
        if self.config.log_enabled and self.config.log_path is not None:
            log.info(f"See rsync log in {self.config.log_path}")

    def _report_usage(self) -> None:
        session = self._require_session()
        usage = session.usage()
        if usage is None:
            log.warning(f"{session.mount_dir} is not mounted, no usage to report")
            return
        log.info(
            f"{session.binding.partition}: {usage.total_mib} MiB total, "
            f"{usage.used_mib} MiB used, {usage.free_mib} MiB available "
            f"({usage.percent:.0f}% used)"
        )

    def _create(self) -> None:
        config = self.config
        session = self._require_session()
        self._advance(State.INITIALIZING)
        if config.bootloader is None:
            raise ValidationError("No bootloader layout configured")
        fetch_bootloader_assets(config.bootloader)
        if config.image.size_blocks is None or config.image.block_size is None:
            raise ValidationError(f"No size known for new image {config.image}")
        image_store.create_image(
            config.image.path, config.image.size_blocks, config.image.block_size
        )
        self.token.raise_if_cancelled()
        initialize_disk(
            session,
            config.bootloader,
            config.source_device,
            partition_start=config.partition_start,
            filesystem=config.filesystem,
        )

    def _mount(self) -> None:
        self._advance(State.ATTACHING)
        self._require_session().mount()
        self._advance(State.MOUNTED)

    def _unmount(self) -> None:
        self._advance(State.UNMOUNTING)
        self._require_session().unmount()

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def _run_start(self) -> None:
        config = self.config
        log.info("Starting SD Image backup process")
        if self.creating:
            self._create()
        self._mount()
        self._advance(State.SYNCING)
        run_sync(
            config.mount_dir,
            log_path=config.log_path if config.log_enabled else None,
        )
        self._report_usage()
        self._unmount()
        if config.compress:
            self._advance(State.COMPRESSING)
            compression.compress_image(
                config.image, config.delete_source, self.token.raise_if_cancelled
            )
        log.success("SD Image backup process completed.")
        self._report_log()

    def _run_mount(self) -> None:
        if self.creating:
            self._create()
        self._mount()
        log.success(
            f"SD Image has been mounted and can be accessed at:\n    {self.config.mount_dir}"
        )

    def _run_umount(self) -> None:
        self._unmount()

    def _run_check(self) -> None:
        session = self._require_session()
        self._advance(State.UNMOUNTING)
        mountpoint = loop.find_mountpoint(session.binding.device)
        if mountpoint is not None and Path(mountpoint) != session.mount_dir:
            log.info(f"{session.binding.device} is mounted at {mountpoint}")
            # not ours to remove after unmounting
            session.mount_dir = Path(mountpoint)
            session.user_supplied = True
        session.unmount_filesystem()
        self._advance(State.ATTACHING)
        loop.expose_partitions(session.binding)
        log.info(f"Checking filesystem on {session.binding.partition}")
        run_checked_command(
            ["fsck", "-y", session.binding.partition], accept_codes=FSCK_ACCEPT_CODES
        )
        session.detach()
        log.success(f"Filesystem on {self.config.image} is clean")

    def _run_resize(self) -> None:
        config = self.config
        self._advance(State.INITIALIZING)
        image_store.grow_image(config.image.path, config.resize_increment)
        resize_partition(self._require_session())

    def _run_gzip(self) -> None:
        self._advance(State.COMPRESSING)
        compression.compress_image(
            self.config.image, self.config.delete_source, self.token.raise_if_cancelled
        )

    def _run_cloneid(self) -> None:
        self._advance(State.ATTACHING)
        identity = clone_identity(self._require_session(), self.config.source_device)
        log.success(
            f"Cloned UUID {identity.fs_uuid} and PTUUID {identity.ptuuid} "
            f"onto {self.config.image}"
        )

    def _run_showdf(self) -> None:
        self._mount()
        self._report_usage()
        self._unmount()


def execute(config: BackupConfig, token: Optional[CancellationToken] = None) -> State:
    """Run ``config.command`` with interrupt handlers installed."""
    if config.command is Command.VERSION:
        raise ValidationError("version is handled by the dispatcher")
    token = token or CancellationToken()
    with token.installed():
        return Orchestrator(config, token).run()
