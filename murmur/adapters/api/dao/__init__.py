from .common import CommonHTTPClient
from .time import TimeHTTPDAO
from .websocket import AbstractTransport, WebSocketDAO
