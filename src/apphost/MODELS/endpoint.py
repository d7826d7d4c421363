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
Models for service endpoints: declarations, references and resolved addresses.
"""
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..UTILS.reference_template import ENDPOINT_PROPERTIES


class EndpointDefinition(BaseModel):
    """
    An endpoint declared by a service.

    ``port`` is the address consumers use. For proxied endpoints the process
    binds ``target_port`` instead, and an intermediary forwards ``port`` to it.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    scheme: str = "http"
    port: Optional[int] = Field(default=None, ge=1, le=65535)
    target_port: Optional[int] = Field(default=None, ge=1, le=65535)
    external: bool = False
    proxied: bool = True
    env: Optional[str] = None  # variable receiving the bound port, e.g. PORT

    @field_validator('name')
    @classmethod
    def _check_name(cls, value: str) -> str:
        if not value or '.' in value or any(c.isspace() for c in value):
            raise ValueError(f"invalid endpoint name '{value}'")
        return value


class EndpointReference(BaseModel):
    """
    A deferred reference to another service's endpoint, rendered at launch time.
    """
    model_config = ConfigDict(frozen=True)

    service: str
    endpoint: str
    property: str = "url"

    @field_validator('property')
    @classmethod
    def _check_property(cls, value: str) -> str:
        if value not in ENDPOINT_PROPERTIES:
            raise ValueError(f"unknown endpoint property '{value}'")
        return value


class ResolvedEndpoint(BaseModel):
    """
    An endpoint bound to a concrete address for the current run.
    """
    model_config = ConfigDict(frozen=True)

    service: str
    name: str
    scheme: str
    host: str
    port: int
    target_port: int
    external: bool = False
    proxied: bool = True

    @property
    def url(self) -> str:
        return f"{self.scheme}://{self.host}:{self.port}"

    def value(self, prop: str = "url") -> str:
        """
        Returns one property of the address as a string.

        :param prop: One of url, host, port, scheme, target_port.
        """
        if prop == "url":
            return self.url
        if prop in ("host", "scheme"):
            return getattr(self, prop)
        if prop in ("port", "target_port"):
            return str(getattr(self, prop))
        raise KeyError(prop)
