# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Parser for apphost.yaml definition files.
"""
import logging
import os
from typing import Any, Dict, List, Optional

import yaml
from dotenv import dotenv_values
from pydantic import ValidationError

from ..MODELS.apphost_config import AppHostConfig, EnvironmentBlock, OrchestratorSettings
from ..MODELS.service_definition import ServiceDefinition
from ..UTILS.string_interpolation import EnvironmentInterpolator
from ..errors import DefinitionError

logger = logging.getLogger(__name__)


class AppHostParser:
    """
    Parser for apphost.yaml files.

    The file holds optional ``settings``, ``common`` services folded into every
    block, and a list of ``environments`` blocks. Host variables written as
    ``${VAR}`` are interpolated before the YAML is loaded.
    """
    def __init__(self, context: Optional[Dict[str, str]] = None, load_dotenv: bool = True):
        """
        Initializes the parser with an optional environment context for interpolation.

        :param context: Variables for interpolation; the process environment by default.
        :param load_dotenv: Overlay a ``.env`` file found next to the definition file.
        """
        self.context = dict(os.environ) if context is None else dict(context)
        self.load_dotenv = load_dotenv

    def parse(self, path: str) -> AppHostConfig:
        """
        Parses a definition file from a path.

        :param path: Path to the definition file.
        :return: Parsed configuration.
        :raises DefinitionError: If the file is missing or invalid.
        """
        if not os.path.exists(path):
            raise DefinitionError("file not found", source=path)

        context = dict(self.context)
        dotenv_path = os.path.join(os.path.dirname(os.path.abspath(path)), ".env")
        if self.load_dotenv and os.path.exists(dotenv_path):
            context.update({k: v for k, v in dotenv_values(dotenv_path).items() if v is not None})

        with open(path, 'r') as f:
            content = f.read()
        return self.parse_from_string(content, source=path, context=context)

    def parse_from_string(self, content: str, source: Optional[str] = None,
                          context: Optional[Dict[str, str]] = None) -> AppHostConfig:
        """
        Parses a definition file from a string.

        :param content: YAML content of the definition file.
        :param source: Name used in error messages.
        :param context: Interpolation variables, overriding the parser's own.
        :return: Parsed configuration.
        """
        content = EnvironmentInterpolator(self.context if context is None else context).interpolate(content)

        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise DefinitionError(f"invalid YAML: {e}", source=source) from e
        if not data:
            data = {}
        if not isinstance(data, dict):
            raise DefinitionError("top level must be a mapping", source=source)

        try:
            common = self._parse_services(data.get('common') or [])
            blocks = []
            for index, spec in enumerate(data.get('environments') or []):
                blocks.append(self._parse_block(index, spec, common))
            settings = OrchestratorSettings(**(data.get('settings') or {}))
        except ValidationError as e:
            raise DefinitionError(str(e), source=source) from e
        except (TypeError, ValueError) as e:
            raise DefinitionError(str(e), source=source) from e

        logger.debug("Parsed %d environment block(s) from %s", len(blocks), source or "<string>")
        return AppHostConfig(blocks=tuple(blocks), settings=settings)

    def _parse_block(self, index: int, spec: Any, common: List[ServiceDefinition]) -> EnvironmentBlock:
        """
        Parses one environment block; common services come first.
        """
        if not isinstance(spec, dict):
            raise ValueError(f"environment block #{index + 1} must be a mapping")

        labels = spec.get('environments', spec.get('environment'))
        if isinstance(labels, str):
            labels = [labels]
        if not labels:
            raise ValueError(f"environment block #{index + 1} names no environment")

        services = common + self._parse_services(spec.get('services') or [])
        return EnvironmentBlock(environments=tuple(labels), services=tuple(services))

    def _parse_services(self, spec: Any) -> List[ServiceDefinition]:
        """
        Accepts either a list of service mappings or a mapping keyed by name.
        """
        if isinstance(spec, dict):
            spec = [dict(body or {}, name=name) for name, body in spec.items()]
        return [self._parse_service(s) for s in spec]

    def _parse_service(self, spec: Dict[str, Any]) -> ServiceDefinition:
        """
        Parses a single service definition.

        :param spec: The service specification dictionary.
        :return: A ServiceDefinition instance.
        """
        spec = dict(spec)
        for key in ('references', 'wait_for', 'environment_files'):
            spec[key] = self._to_list(spec.get(key))

        launch = spec.get('launch')
        if isinstance(launch, str):
            spec['launch'] = {'kind': 'command', 'command': launch.split()}
        elif isinstance(launch, list):
            spec['launch'] = {'kind': 'command', 'command': launch}
        elif isinstance(launch, dict) and isinstance(launch.get('command'), str):
            spec['launch'] = dict(launch, command=launch['command'].split())

        health = spec.get('health_check')
        if isinstance(health, str):
            spec['health_check'] = {'path': health}

        return ServiceDefinition(**spec)

    def _to_list(self, val: Any) -> List[str]:
        """
        Helper to ensure a value is a list of strings.
        """
        if val is None:
            return []
        if isinstance(val, str):
            return [val]
        return list(val)
