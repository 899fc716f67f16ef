"""Record of the running Jupyter server.

This lives in a dedicated module so `process.py` and `gateway.py` stay free of
imports from `supervisor.py`, the only owner of a `ServerState`.
"""

from __future__ import annotations

from typing import ClassVar

from pydantic import BaseModel, ConfigDict

from nbgate.gateway import KernelProxy
from nbgate.process import KernelProcess


class ServerState(BaseModel):
    """The running Jupyter server: its port, process and proxy binding."""

    model_config: ClassVar[ConfigDict] = ConfigDict(arbitrary_types_allowed=True)

    port: int
    process: KernelProcess
    proxy: KernelProxy
    # Set by close() so the exit observer knows the exit was requested.
    closing: bool = False
