import os
import shlex
import sys
from typing import List, Tuple

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict
from typing_extensions import Annotated


def _default_pipeline_cmd() -> List[str]:
    return [sys.executable, "-m", "emailpipe_harness.pipeline"]


def split_listen(value: str, name: str = "listen address") -> Tuple[str, int]:
    """Split ``host:port`` into its parts."""
    host, sep, port = value.rpartition(":")
    if not sep or not host or not port.isdigit():
        raise ValueError(f"{name} must look like host:port, got: {value!r}")
    return host, int(port)


class HarnessConfig(BaseSettings):
    """Settings shared by the harness, its child processes and the reference pipeline.

    Read from the environment on construction. The listen addresses use the
    pipeline's own ``HTTP_LISTEN``/``SMTP_LISTEN``, everything else is prefixed
    with ``EMAILPIPE_``. Keyword arguments win over the environment.
    """

    # Pipeline interfaces
    http_listen: str = Field("127.0.0.1:9001", validation_alias="HTTP_LISTEN")
    smtp_listen: str = Field("127.0.0.1:9002", validation_alias="SMTP_LISTEN")
    domain: str = "emailpipe.sh"

    # Child processes; an empty pipeline command means the pipeline runs elsewhere
    pipeline_cmd: Annotated[List[str], NoDecode] = Field(default_factory=_default_pipeline_cmd)
    listener_cmd: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: ["curl", "-s", "-N"]
    )

    # Timing, in seconds
    line_wait: float = Field(2.0, ge=0)
    poll_interval: float = Field(0.25, gt=0)
    drain_until_eof: bool = False
    drain_timeout: float = 30.0
    startup_timeout: float = 10.0
    shutdown_grace: float = 5.0
    smtp_timeout: float = 10.0

    model_config = SettingsConfigDict(
        env_prefix="EMAILPIPE_",
        populate_by_name=True,
        extra="ignore",
    )

    @field_validator("http_listen", "smtp_listen")
    @classmethod
    def check_listen(cls, v, info):
        split_listen(v, info.field_name.upper())
        return v

    @field_validator("pipeline_cmd", "listener_cmd", mode="before")
    @classmethod
    def parse_command(cls, v):
        """Commands come from the environment as shell words."""
        if v is None:
            return []
        if isinstance(v, str):
            return shlex.split(v)
        return v

    @property
    def http_address(self) -> Tuple[str, int]:
        return split_listen(self.http_listen, "HTTP_LISTEN")

    @property
    def smtp_address(self) -> Tuple[str, int]:
        return split_listen(self.smtp_listen, "SMTP_LISTEN")

    @property
    def base_url(self) -> str:
        host, port = self.http_address
        return f"http://{host}:{port}"

    @property
    def listen_url(self) -> str:
        return f"{self.base_url}/listen"

    def pipeline_env(self) -> dict:
        """Environment for the spawned pipeline; it reads the same listen variables."""
        env = dict(os.environ)
        env["HTTP_LISTEN"] = self.http_listen
        env["SMTP_LISTEN"] = self.smtp_listen
        env["EMAILPIPE_DOMAIN"] = self.domain
        return env
