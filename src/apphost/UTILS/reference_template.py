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
Deferred endpoint references embedded in environment value-expressions.

A value-expression may contain placeholders of the form
``{{ service.endpoint }}`` or ``{{ service.endpoint.property }}``. They are
parsed when a definition is loaded (to derive reference edges) but only
rendered when the dependent service is launched.
"""
import re
from typing import Callable, List, NamedTuple

PLACEHOLDER_PATTERN = re.compile(r'\{\{\s*([^{}\s]+)\s*\}\}')

ENDPOINT_PROPERTIES = ("url", "host", "port", "scheme", "target_port")


class Placeholder(NamedTuple):
    """A single parsed ``{{ service.endpoint.property }}`` placeholder."""
    service: str
    endpoint: str
    property: str = "url"


def parse_placeholder(expression: str) -> Placeholder:
    """
    Splits a placeholder expression into its service, endpoint and property.

    :param expression: The text between the braces, e.g. ``web-api.https``.
    :return: The parsed placeholder.
    :raises ValueError: If the expression is not ``service.endpoint[.property]``.
    """
    parts = expression.split('.')
    if len(parts) == 2 and all(parts):
        return Placeholder(parts[0], parts[1])
    if len(parts) == 3 and all(parts):
        if parts[2] not in ENDPOINT_PROPERTIES:
            raise ValueError(
                f"Unknown endpoint property '{parts[2]}' in '{{{{ {expression} }}}}', "
                f"expected one of: {', '.join(ENDPOINT_PROPERTIES)}"
            )
        return Placeholder(parts[0], parts[1], parts[2])
    raise ValueError(f"Malformed endpoint reference '{{{{ {expression} }}}}'")


class ReferenceTemplate:
    """
    Parses and renders value-expressions containing endpoint placeholders.
    """
    @staticmethod
    def placeholders(template: str) -> List[Placeholder]:
        """
        Returns every placeholder in the template, in order of appearance.

        :param template: The value-expression.
        :return: Parsed placeholders (duplicates preserved).
        """
        return [parse_placeholder(m.group(1)) for m in PLACEHOLDER_PATTERN.finditer(template)]

    @staticmethod
    def render(template: str, resolve: Callable[[Placeholder], str]) -> str:
        """
        Substitutes every placeholder using the given resolver.

        :param template: The value-expression.
        :param resolve: Returns the concrete value for a placeholder.
        :return: The rendered string.
        """
        def replace(match):
            return resolve(parse_placeholder(match.group(1)))

        return PLACEHOLDER_PATTERN.sub(replace, template)
