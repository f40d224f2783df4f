"""
Version control reads used by the GC sweep: remote branches and whether a
branch saw commits recently. Runs git in the checkout the job starts in.
"""
import logging
from typing import Optional

from .shell import CommandRunner


class GitRepository:
    def __init__(self, runner: CommandRunner, logger: logging.Logger,
                 remote: str = "origin", cwd: Optional[str] = None):
        self.runner = runner
        self.logger = logger
        self.remote = remote
        self.cwd = cwd

    async def list_branches(self) -> list[str]:
        r = await self.runner.run_async(
            ["git", "branch", "-r", "--format=%(refname:short)"], cwd=self.cwd, silent=True,
        )
        prefix = f"{self.remote}/"
        branches = []
        for line in r.stdout.splitlines():
            ref = line.strip()
            if not ref.startswith(prefix):
                continue
            branch = ref[len(prefix):]
            if branch and branch != "HEAD":
                branches.append(branch)
        return branches

    async def has_recent_commits(self, branch: str, days: int) -> bool:
        r = await self.runner.run_async(
            ["git", "log", f"{self.remote}/{branch}", f"--since={days} days ago", "-1", "--format=%H"],
            cwd=self.cwd,
            silent=True,
        )
        recent = bool(r.stdout.strip())
        self.logger.info(f"{branch} has-recent-commits={recent}")
        return recent
