from murmur.exceptions import APIError

from .common import CommonHTTPClient


class TimeHTTPDAO:
    """Trusted time source: the relay server's clock"""

    def __init__(self, http_client: CommonHTTPClient, endpoint: str = "/time"):
        self._http_client = http_client
        self._endpoint = endpoint

    async def get_server_time(self) -> int:
        """
        :return: server time as unix ms
        """
        data = await self._http_client.get(self._endpoint)
        server_time = data.get("server_time")
        if not isinstance(server_time, (int, float)) or isinstance(server_time, bool):
            raise APIError(
                "Time endpoint returned no usable server_time",
                response_data=data
            )
        return int(server_time)
