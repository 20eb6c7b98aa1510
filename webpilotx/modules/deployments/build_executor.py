import logging
from pathlib import Path
from typing import Dict, Optional

from webpilotx.config import settings
from webpilotx.modules.deployments import worker_registry
from webpilotx.modules.deployments.commands import EXIT_CANCELLED, run_streamed
from webpilotx.modules.deployments.log_store import DeploymentLog, MARKER_BUILD, NO_BUILD_SCRIPT_TEXT

logger = logging.getLogger(__name__)


class BuildExecutor:
    def run(
        self,
        build_script: Optional[str],
        work_dir: Path,
        log: DeploymentLog,
        env: Optional[Dict[str, str]] = None,
        deployment_id: Optional[int] = None,
        deadline: Optional[float] = None,
    ) -> int:
        """
        Run the page's build recipe in its working tree.

        Args:
            build_script: Multi-line shell recipe; nothing to do when empty
            work_dir: Working tree, used as the current directory
            log: Deployment log receiving the combined output while it runs
            env: Environment for the recipe
            deployment_id: Registers the child for cancellation
            deadline: time.monotonic() value after which the recipe is killed

        Returns:
            The recipe's exit code, unchanged
        """
        log.marker(MARKER_BUILD)
        if not build_script or not build_script.strip():
            log.line(NO_BUILD_SCRIPT_TEXT)
            return 0

        logger.info(f"Running build script for deployment {deployment_id} in {work_dir}")
        code = run_streamed(
            [settings.build_shell, "-c", build_script],
            log,
            cwd=str(work_dir),
            env=env,
            deployment_id=deployment_id,
            deadline=deadline,
            display=f"{settings.build_shell} -c <build script>",
        )
        if deployment_id is not None and worker_registry.is_cancel_requested(deployment_id):
            log.line("Build cancelled.")
            return EXIT_CANCELLED
        if code != 0:
            log.line(f"Build script exited with code {code}")
        else:
            log.line("Build script finished successfully.")
        return code
