"""
Usage telemetry of a preview: hours since the last write to the preview's
own database. Used by the GC sweep as the second staleness signal.
"""
import logging
import subprocess
from typing import Optional

from ..exceptions import CommandError
from .kubernetes_service import ClusterHandle
from .shell import CommandRunner

LAST_ACTIVITY_QUERY = (
    "SELECT TIMESTAMPDIFF(HOUR, MAX(t), NOW()) FROM ("
    "SELECT MAX(_lastModified) AS t FROM d_b_workspace_instance "
    "UNION ALL SELECT MAX(_lastModified) AS t FROM d_b_user"
    ") AS activity"
)


def parse_hours(output: str) -> Optional[int]:
    value = output.strip().splitlines()[-1].strip() if output.strip() else ""
    if not value or value.upper() == "NULL":
        return None
    return int(value)


class ActivityProbe:
    def __init__(self, runner: CommandRunner, logger: logging.Logger, inactive_hours: int):
        self.runner = runner
        self.logger = logger
        self.inactive_hours = inactive_hours

    async def hours_since_activity(self, cluster: ClusterHandle, namespace: str) -> Optional[int]:
        r = await self.runner.run_async(
            cluster.kubectl(
                "exec", "-n", namespace, "svc/mysql", "--",
                "mysql", "--host=127.0.0.1", "--port=3306", "--user=root", "--password=test",
                "--database=gitpod", "-s", "-N", "-e", LAST_ACTIVITY_QUERY,
            ),
            silent=True,
        )
        return parse_hours(r.stdout)

    async def is_active(self, cluster: ClusterHandle, namespace: str) -> bool:
        """
        True if the database saw writes within the inactivity window. A
        probe that cannot reach the database counts as active: deleting is
        the destructive choice and needs a positive signal.
        """
        try:
            hours = await self.hours_since_activity(cluster, namespace)
        except (CommandError, ValueError, subprocess.TimeoutExpired) as e:
            self.logger.warning(f"Activity probe for {namespace} on {cluster.name} failed, keeping it: {e}")
            return True
        active = hours is not None and hours < self.inactive_hours
        self.logger.info(f"{namespace}: hours-since-activity={hours} active={active}")
        return active
