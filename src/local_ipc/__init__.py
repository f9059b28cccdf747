"""
local-ipc - request/response messaging between processes on one host.

Two co-located processes exchange one header/message pair and one response
per connection over a Unix domain socket addressed by a filesystem path.
"""

from local_ipc.ipc import Client, Message, Server

__version__ = "0.1.0"

__all__ = ["Client", "Message", "Server", "__version__"]
