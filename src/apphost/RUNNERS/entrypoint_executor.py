"""
Utilities for resolving the full execution command for a service.
"""
import os
from typing import List, Optional

from ..MODELS.service_definition import LaunchDescriptor, LaunchKind


class EntrypointExecutor:
    """
    Turns a launch descriptor into an argv list and a working directory.
    """
    def get_full_command(self, launch: LaunchDescriptor) -> List[str]:
        """
        Builds the command for a launch descriptor.

        :param launch: The descriptor.
        :return: The full command list, empty if there is nothing to run.
        """
        if launch.kind == LaunchKind.PROJECT:
            if not launch.path:
                return []
            command = ["dotnet", "run", "--project", launch.path]
            if launch.args:
                command += ["--"] + list(launch.args)
            return command

        if launch.kind == LaunchKind.JAVASCRIPT:
            # npm, pnpm and yarn share the "<tool> run <script>" form
            command = [launch.package_manager.value, "run", launch.run_script]
            if launch.args:
                command += ["--"] + list(launch.args)
            return command

        return list(launch.command) + list(launch.args)

    def get_working_dir(self, launch: LaunchDescriptor, base_dir: str = ".") -> Optional[str]:
        """
        Directory the process starts in. JavaScript apps run from their package
        directory unless an explicit working directory is given.
        """
        working_dir = launch.working_dir
        if working_dir is None and launch.kind == LaunchKind.JAVASCRIPT:
            working_dir = launch.path
        if working_dir is None:
            return None
        return os.path.normpath(os.path.join(base_dir, working_dir))
