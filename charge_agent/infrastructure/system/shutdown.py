import asyncio
import logging
import shlex

logger = logging.getLogger(__name__)


class SystemShutdown:

    def __init__(self, command: str = "shutdown now"):
        self.argv = shlex.split(command)
        if not self.argv:
            raise ValueError("shutdown command must not be empty")

    async def invoke(self) -> int:
        logger.warning("Invoking OS shutdown: %s", " ".join(self.argv))

        process = await asyncio.create_subprocess_exec(
            *self.argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await process.communicate()

        if stdout:
            logger.info("Shutdown stdout: %s", stdout.decode(errors="replace").strip())
        if process.returncode != 0:
            raise RuntimeError(
                f"Shutdown command exited with {process.returncode}: "
                f"{stderr.decode(errors='replace').strip()}"
            )
        return process.returncode
