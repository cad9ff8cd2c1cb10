"""Prepare the sandbox project before the first turn.

Scaffolds a Vite app, installs its dependencies, starts the dev server that
backs the preview, and loads the entry file as the editor's current code.
Every step goes through the ``CommandExecutor`` so it shares the queue,
timeouts and terminal output with model-issued commands.
"""

import logging
import posixpath
import shlex
from collections.abc import Callable

from livecode.commands.executor import CommandExecutor
from livecode.config import Settings
from livecode.files.materializer import FileMaterializer
from livecode.sandbox.terminal import format_error, format_success
from livecode.types import ProjectSetupResult


logger = logging.getLogger("livecode.agent.project")


class ProjectInitializer:
    def __init__(
        self,
        executor: CommandExecutor,
        materializer: FileMaterializer,
        settings: Settings | None = None,
        *,
        terminal: Callable[[str], None] | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.executor = executor
        self.materializer = materializer
        self.terminal = terminal
        self.project_dir = self.settings.project_dir.strip("/")

    @property
    def create_command(self) -> str:
        return (
            f"npm create --yes vite@latest {shlex.quote(self.project_dir)}"
            f" -- --template {shlex.quote(self.settings.project_template)}"
        )

    @property
    def dev_command(self) -> str:
        port = self.settings.sandbox_ports[0] if self.settings.sandbox_ports else 5173
        return f"npm run dev -- --host 0.0.0.0 --port {port}"

    @property
    def entry_path(self) -> str:
        entry = self.settings.entry_files[0] if self.settings.entry_files else "src/App.tsx"
        return posixpath.join(self.project_dir, entry)

    async def run(self) -> ProjectSetupResult:
        scaffolded = False
        if await self._has_package_json():
            logger.info("project %s already exists, skipping scaffold", self.project_dir)
        else:
            self._write("📦 Creating Vite React project...\r\n")
            # create-vite writes the directory itself, so run it from the sandbox root
            created = await self.executor.execute(self.create_command, cwd=".")
            if not created.success:
                return self._failed(f"Vite project creation failed: {created.error}")
            scaffolded = True

            self._write("📦 Installing dependencies...\r\n")
            installed = await self.executor.execute("npm install")
            if not installed.success:
                return self._failed(f"Dependency installation failed: {installed.error}")

        self._write("🚀 Starting Vite dev server...\r\n")
        dev = await self.executor.execute(self.dev_command)
        if not dev.success:
            return self._failed(f"Dev server exited unexpectedly: {dev.error}")

        try:
            await self.materializer.entry_writer.load(self.entry_path)
        except FileNotFoundError:
            return self._failed(f"Entry file {self.entry_path} is missing.")

        self._write(format_success(f"✅ Project ready, entry file {self.entry_path} loaded."))
        logger.info("project %s ready scaffolded=%s", self.project_dir, scaffolded)
        return ProjectSetupResult(success=True, scaffolded=scaffolded, entry_file=self.entry_path)

    async def _has_package_json(self) -> bool:
        try:
            await self.materializer.sandbox.read_file(posixpath.join(self.project_dir, "package.json"))
        except FileNotFoundError:
            return False
        return True

    def _failed(self, message: str) -> ProjectSetupResult:
        logger.error("project setup failed: %s", message)
        self._write(format_error(message))
        return ProjectSetupResult(success=False, error=message)

    def _write(self, text: str) -> None:
        if self.terminal is not None:
            self.terminal(text)
