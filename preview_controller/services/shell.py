"""
External command wrapper — every black-box tool (kubectl, helm, terraform,
gcloud, git, the installer, the VM script) is executed through here.
"""
import asyncio
import logging
import os
import subprocess
from typing import Optional

from ..exceptions import CommandError

DEFAULT_TIMEOUT = 600


class CommandRunner:
    """Runs commands and logs their output under the caller's logger."""

    def __init__(self, logger: logging.Logger, default_timeout: int = DEFAULT_TIMEOUT):
        self.logger = logger
        self.default_timeout = default_timeout

    def run(self, args: list[str], check: bool = True, input: Optional[str] = None,
            cwd: Optional[str] = None, env: Optional[dict] = None,
            timeout: Optional[int] = None, silent: bool = False) -> subprocess.CompletedProcess:
        """Execute a command. Raises CommandError on a non-zero exit if check=True."""
        if not silent:
            self.logger.info(f"exec> {' '.join(args)}")
        full_env = None
        if env:
            full_env = dict(os.environ)
            full_env.update(env)
        result = subprocess.run(
            args,
            capture_output=True,
            text=True,
            input=input,
            cwd=cwd,
            env=full_env,
            timeout=timeout or self.default_timeout,
        )
        if result.stdout and not silent:
            self.logger.debug(f"stdout: {result.stdout[:800]}")
        if result.stderr and result.returncode != 0:
            self.logger.warning(f"stderr: {result.stderr[:800]}")
        if check and result.returncode != 0:
            raise CommandError(args, result.returncode, result.stdout, result.stderr)
        return result

    async def run_async(self, args: list[str], **kwargs) -> subprocess.CompletedProcess:
        return await asyncio.to_thread(self.run, args, **kwargs)
