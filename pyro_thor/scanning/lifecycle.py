"""Scan lifecycle: prepare, acquire, extract, execute, finalize, clean up.

One ScanLifecycle can drive many concurrent runs. Everything a run
mutates lives in its ScanContext and ScanOutcome, never on the lifecycle.
"""

import asyncio
import json
import logging
import shutil
import tempfile
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, List, Optional, Sequence, Set, Tuple, Union

from ..errors import (
    BinaryNotFoundError,
    ExecutionError,
    ExecutionTimeout,
    ResultFormatError,
    ScanError,
    TransportError,
)
from ..models import PyroConfig
from ..rules.store import RuleStore
from ..stages import ScanStage, ScanState
from .models import ScanContext, ScanMode, ScanOutcome
from .package import PackageManager, best_effort
from .platform import PlatformHooks, PlatformInfo
from .transport import Transport

ENTERPRISE_FLAGS = ["--enterprise-mode", "--ai-enhanced"]
STORE_OPTIMIZATION_FLAG = "--store-optimized"
RULE_NAME_KEYS = ("rule", "rule_name", "rulename")


def compose_arguments(
    base_flags: Sequence[str],
    mode: ScanMode,
    store_attached: bool,
    scan_path: Union[str, Path],
    working_dir: Union[str, Path],
) -> List[str]:
    """Scanner argument list, in the order THOR expects them."""
    args = list(base_flags)
    if mode == ScanMode.ENTERPRISE:
        args.extend(ENTERPRISE_FLAGS)
    if store_attached:
        args.append(STORE_OPTIMIZATION_FLAG)
    args.extend(["--path", str(scan_path), "--rebase-dir", str(working_dir)])
    return args


def extract_rule_names(report: Any) -> Set[str]:
    """Collect rule names mentioned anywhere in a report document."""
    names: Set[str] = set()
    stack = [report]
    while stack:
        node = stack.pop()
        if isinstance(node, dict):
            for key, value in node.items():
                if key.lower() in RULE_NAME_KEYS and isinstance(value, str):
                    names.add(value)
                else:
                    stack.append(value)
        elif isinstance(node, list):
            stack.extend(node)
    return names


class ScanLifecycle:
    """Drives a THOR scan from an empty working directory to a saved report.

    Cleanup runs exactly once for every run that got as far as creating
    its working directory, whichever later stage failed.
    """

    def __init__(
        self,
        config: PyroConfig,
        transport: Transport,
        hooks: PlatformHooks,
        platform: Optional[PlatformInfo] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config
        self.transport = transport
        self.hooks = hooks
        self.platform = platform or PlatformInfo.detect()
        self.packages = PackageManager(config, transport, hooks, self.platform)
        self.logger = logger or logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    def binary_path(self, working_dir: Path) -> Path:
        return working_dir / "Thor" / self.platform.binary_name

    async def run(self, ctx: ScanContext) -> ScanOutcome:
        """Execute one scan.

        Returns the outcome on success. Stage failures raise the matching
        ScanError subclass after cleanup; an upload failure does not, it is
        recorded in ScanOutcome.publish_error instead.
        """
        if ctx.working_dir is not None:
            raise ValueError(f"Scan context {ctx.scan_id} has already been run")

        outcome = ScanOutcome(
            scan_id=ctx.scan_id,
            mode=ctx.mode,
            started_at=datetime.now(timezone.utc),
        )
        enterprise = ctx.mode == ScanMode.ENTERPRISE
        if enterprise:
            self.logger.info(f"Starting Thor Enterprise scan {ctx.scan_id} of {ctx.scan_path}")
        else:
            self.logger.info(f"Starting Thor scan {ctx.scan_id} of {ctx.scan_path}")

        isolated = False
        try:
            with self._stage(outcome, ScanStage.PREPARE):
                isolated = self._prepare(ctx)
            self._advance(outcome, ScanState.PREPARED)

            with self._stage(outcome, ScanStage.ACQUIRE):
                package = await self.packages.acquire()
            self._advance(outcome, ScanState.PACKAGE_READY)

            with self._stage(outcome, ScanStage.EXTRACT):
                await asyncio.to_thread(self.packages.extract, package, ctx.working_dir)
            self._advance(outcome, ScanState.EXTRACTED)

            with self._stage(outcome, ScanStage.EXECUTE):
                raw, report = await self._execute(ctx, outcome)
            outcome.report = report
            self._advance(outcome, ScanState.EXECUTED)

            with self._stage(outcome, ScanStage.FINALIZE):
                self._finalize(ctx, outcome, raw)
            self._advance(outcome, ScanState.FINALIZED)

            await self._publish(outcome)
        finally:
            if ctx.working_dir is not None:
                self._cleanup(ctx.working_dir, isolated)
            outcome.completed_at = datetime.now(timezone.utc)

        if enterprise:
            self.logger.info(f"Enterprise scan {ctx.scan_id} completed successfully")
        else:
            self.logger.info(f"Scan {ctx.scan_id} completed successfully")
        return outcome

    @contextmanager
    def _stage(self, outcome: ScanOutcome, stage: ScanStage) -> Iterator[None]:
        """Tag any failure inside the block with ``stage`` and mark the run failed."""
        try:
            yield
        except ScanError as e:
            e.stage = stage
            self._fail(outcome, e)
            raise
        except Exception as e:
            error = ScanError(f"{stage.value} stage failed", stage=stage, cause=e)
            self._fail(outcome, error)
            raise error from e

    def _fail(self, outcome: ScanOutcome, error: ScanError) -> None:
        outcome.state = ScanState.FAILED
        outcome.failed_stage = error.stage
        self.logger.error(f"Scan {outcome.scan_id} failed: {error}")

    def _advance(self, outcome: ScanOutcome, state: ScanState) -> None:
        outcome.state = state
        self.logger.debug(f"Scan {outcome.scan_id} -> {state.value}")

    def _prepare(self, ctx: ScanContext) -> bool:
        """Allocate the working directory. Returns whether isolation was added."""
        temp_root = self.config.scanning.temp_dir
        if temp_root:
            Path(temp_root).mkdir(parents=True, exist_ok=True)
        ctx.working_dir = Path(
            tempfile.mkdtemp(prefix=f"pyro-thor-{ctx.scan_id[:8]}-", dir=temp_root)
        )
        self.logger.info(f"Prepared working directory {ctx.working_dir}")

        return best_effort(
            self.logger,
            f"add isolation exception for {ctx.working_dir}",
            self.hooks.add_isolation_exception,
            ctx.working_dir,
        )

    async def _execute(self, ctx: ScanContext, outcome: ScanOutcome) -> Tuple[bytes, Any]:
        binary = self.binary_path(ctx.working_dir)
        if not binary.is_file():
            raise BinaryNotFoundError(f"Thor binary not found: {binary}")

        args = compose_arguments(
            self.config.thor.flags,
            ctx.mode,
            ctx.store_attached,
            ctx.scan_path,
            ctx.working_dir,
        )
        cmd = [str(binary), *args]
        if ctx.mode == ScanMode.ENTERPRISE:
            self.logger.info(f"Executing enterprise command: {' '.join(cmd)}")
        else:
            self.logger.debug(f"Executing command: {' '.join(cmd)}")

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(ctx.working_dir),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ExecutionError(f"Failed to execute Thor scanner {binary}", cause=e) from e

        timeout = self.config.scanning.execution_timeout_seconds
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError as e:
            await self._terminate(process)
            raise ExecutionTimeout(f"Thor scan exceeded {timeout}s", cause=e) from e
        except BaseException:
            # Cancelled from outside: the child must not outlive its working directory.
            await self._terminate(process)
            raise

        outcome.return_code = process.returncode
        outcome.stderr = stderr.decode("utf-8", errors="replace")
        if process.returncode != 0:
            raise ExecutionError(
                f"Thor scan failed with exit code {process.returncode}",
                stderr=outcome.stderr,
                return_code=process.returncode,
            )

        try:
            report = json.loads(stdout)
        except ValueError as e:
            raise ResultFormatError("Failed to parse Thor output as JSON", cause=e) from e
        return stdout, report

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        """Kill the scanner if it is still running and reap it."""
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                self.logger.debug(f"Thor process {process.pid} exited before it could be killed")
            else:
                self.logger.warning(f"Killed Thor process {process.pid}")
        await process.wait()

    def _finalize(self, ctx: ScanContext, outcome: ScanOutcome, raw: bytes) -> None:
        ctx.output_path.parent.mkdir(parents=True, exist_ok=True)
        ctx.output_path.write_bytes(raw)
        outcome.output_path = ctx.output_path
        self.logger.info(f"Scan results saved to: {ctx.output_path}")

        if ctx.store is not None:
            best_effort(
                self.logger,
                "record scan telemetry",
                self._record_telemetry,
                ctx.store,
                outcome.report,
            )

    def _record_telemetry(self, store: RuleStore, report: Any) -> None:
        names = extract_rule_names(report)
        recorded = 0
        if names:
            for rule in store.list_rules():
                if rule.name in names:
                    store.record_detection(rule.id)
                    recorded += 1

        stats = store.stats()
        self.logger.info(
            f"Rule store stats - Rules: {stats.rules_count}, "
            f"Intel: {stats.indicators_count}, detections recorded: {recorded}"
        )

    async def _publish(self, outcome: ScanOutcome) -> None:
        """Send the report to the Pyro server when an API key is configured."""
        api_key = self.config.pyro.api_key
        if not api_key:
            return

        timeout = self.config.pyro.timeout_seconds
        try:
            await asyncio.wait_for(
                self.transport.upload(self.config.results_url, api_key, outcome.report, timeout),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            outcome.publish_error = f"Upload timed out after {timeout}s"
        except TransportError as e:
            outcome.publish_error = str(e)
        else:
            outcome.published = True
            self.logger.info("Scan results sent to Pyro server successfully")
            return

        self.logger.error(
            f"Failed to send results to Pyro server: {outcome.publish_error} "
            f"(local report at {outcome.output_path} is still valid)"
        )

    def _cleanup(self, working_dir: Path, isolated: bool) -> None:
        """Remove the working directory. Never raises."""
        try:
            shutil.rmtree(working_dir)
        except Exception as e:
            self.logger.error(f"Failed to remove working directory {working_dir}: {e}")
        else:
            self.logger.debug(f"Removed working directory {working_dir}")

        if isolated:
            best_effort(
                self.logger,
                f"remove isolation exception for {working_dir}",
                self.hooks.remove_isolation_exception,
                working_dir,
            )
        self.logger.info("Cleanup completed")
