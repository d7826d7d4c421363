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
Host environment interpolation for definition files.
"""
import logging
import re
from typing import Dict, List

logger = logging.getLogger(__name__)

# $$ escapes a literal dollar sign; ${VAR}, ${VAR:-default} and ${VAR:+alt}
# are replaced from the context.
VARIABLE_PATTERN = re.compile(r'\$\$|\$\{([A-Za-z_][A-Za-z0-9_]*)(?::(-|\+)([^}]*))?\}')


class EnvironmentInterpolator:
    """
    Interpolates host environment variables into definition file text.
    Supports ${VAR}, ${VAR:-default} and ${VAR:+value}.
    """
    def __init__(self, context: Dict[str, str], strict: bool = False):
        """
        :param context: Variables available for interpolation.
        :param strict: Raise KeyError for unset ${VAR} instead of substituting "".
        """
        self.context = context
        self.strict = strict
        self.missing: List[str] = []

    def interpolate(self, template: str) -> str:
        """
        Interpolates variables in the template string.

        :param template: Text containing ${VAR} placeholders.
        :return: The interpolated text.
        :raises KeyError: In strict mode, if a variable without a default is unset.
        """
        def replace(match):
            if match.group(0) == '$$':
                return '$'

            var_name, modifier, alt_value = match.group(1), match.group(2), match.group(3)
            value = self.context.get(var_name)

            if modifier == '-':
                return value if value else alt_value
            if modifier == '+':
                return alt_value if value else ''
            if value is not None:
                return value
            if self.strict:
                raise KeyError(f"Variable {var_name} not found in context")
            if var_name not in self.missing:
                self.missing.append(var_name)
                logger.warning("Variable %s is not set, substituting an empty string", var_name)
            return ''

        return VARIABLE_PATTERN.sub(replace, template)
