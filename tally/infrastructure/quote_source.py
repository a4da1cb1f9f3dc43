'''
WebSocket quote stream source.

Yield raw message bodies from one partition's WebSocket feed as a lazy,
non-restartable async iterator. Decoding is left to the consumer so a
malformed frame is dropped there, not here.
'''

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from typing import Any

import aiohttp

__all__ = ['StreamError', 'WebSocketQuoteSource']

_SESSION_TIMEOUT = aiohttp.ClientTimeout(total=None, sock_connect=30)
_HEARTBEAT_SECONDS = 30.0

_log = logging.getLogger(__name__)


class StreamError(Exception):

    '''
    Raised when the WebSocket feed fails.

    Args:
        message (str): Human-readable error description
    '''

    def __init__(self, message: str) -> None:

        '''
        Store the error message.

        Args:
            message (str): Human-readable error description
        '''

        self.message = message
        super().__init__(message)


class WebSocketQuoteSource:

    '''
    Read quote messages from a WebSocket URL.

    Args:
        url (str): WebSocket endpoint of one stream partition
        session (aiohttp.ClientSession | None): Optional caller-owned session
        heartbeat (float): Seconds between ping frames
    '''

    def __init__(
        self,
        url: str,
        session: aiohttp.ClientSession | None = None,
        heartbeat: float = _HEARTBEAT_SECONDS,
    ) -> None:

        '''
        Store configuration; the session is created lazily if not given.

        Args:
            url (str): WebSocket endpoint of one stream partition
            session (aiohttp.ClientSession | None): Optional caller-owned session
            heartbeat (float): Seconds between ping frames
        '''

        self._url = url
        self._session = session
        self._owns_session = session is None
        self._heartbeat = heartbeat
        self._started = False

    async def __aenter__(self) -> WebSocketQuoteSource:

        '''
        Create the HTTP session on context manager entry.

        Returns:
            WebSocketQuoteSource: Self for use in async with block
        '''

        await self._ensure_session()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:

        '''Close the HTTP session on context manager exit.'''

        await self.close()

    async def close(self) -> None:

        '''Close the HTTP session if this source created it.'''

        if self._session and self._owns_session:
            session = self._session
            self._session = None
            if not session.closed:
                await session.close()

    async def _ensure_session(self) -> aiohttp.ClientSession:

        '''
        Return existing session or create a new one lazily.

        Returns:
            aiohttp.ClientSession: Active HTTP session
        '''

        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=_SESSION_TIMEOUT)
            self._owns_session = True
        return self._session

    async def messages(self) -> AsyncIterator[bytes]:

        '''
        Yield raw frames until the server closes the feed.

        Yields:
            bytes: Body of each TEXT or BINARY frame

        Raises:
            RuntimeError: If called a second time on the same source
            StreamError: If the connection fails or reports an error frame
        '''

        if self._started:
            msg = 'WebSocketQuoteSource.messages() cannot be restarted'
            raise RuntimeError(msg)
        self._started = True

        session = await self._ensure_session()
        try:
            async with session.ws_connect(self._url, heartbeat=self._heartbeat) as ws:
                _log.info('connected to quote stream %s', self._url)
                async for frame in ws:
                    if frame.type == aiohttp.WSMsgType.TEXT:
                        yield frame.data.encode()
                    elif frame.type == aiohttp.WSMsgType.BINARY:
                        yield frame.data
                    elif frame.type == aiohttp.WSMsgType.ERROR:
                        msg = f'WebSocket error on {self._url}: {ws.exception()}'
                        raise StreamError(msg)
                    else:
                        break
        except aiohttp.ClientError as exc:
            msg = f'WebSocket connection to {self._url} failed: {exc}'
            raise StreamError(msg) from exc

        _log.info('quote stream %s closed', self._url)
