"""
Agent runtime backed by a local ``opencode serve`` process.

One OpenCode server is started per worker, in the worker's working directory,
on a free local port. Everything else goes through its HTTP API:

    GET    /provider                  models ("provider/model" ids)
    POST   /session                   create session
    GET    /session                   list sessions
    GET    /session/{id}              get session
    POST   /session/{id}/message      prompt, returns the assistant message
    DELETE /session/{id}              delete session

Every request carries ``?directory=<working directory>``.
"""

import asyncio
import logging
import os
import shutil
import socket
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Deque, Dict, List, Optional, Tuple

import aiohttp

from .errors import AgentRuntimeError
from .ports import ModelInfo, PromptChunk, RemoteSessionInfo

logger = logging.getLogger(__name__)

OPENCODE_HOST = '127.0.0.1'
STARTUP_TIMEOUT = 30.0
SHUTDOWN_TIMEOUT = 5.0
REQUEST_TIMEOUT = 30.0


def find_opencode_binary(configured: Optional[str] = None) -> str:
    """Locate the opencode binary: configured path, PATH, then ~/.opencode."""
    if configured:
        return configured
    env_bin = os.environ.get('OPENCODE_BIN_PATH')
    if env_bin and os.path.exists(env_bin):
        return env_bin
    found = shutil.which('opencode')
    if found:
        return found
    fallback = Path.home() / '.opencode' / 'bin' / 'opencode'
    if fallback.exists() and os.access(fallback, os.X_OK):
        return str(fallback)
    logger.warning('OpenCode binary not found, assuming it is on PATH')
    return 'opencode'


def find_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((OPENCODE_HOST, 0))
        return sock.getsockname()[1]


def split_model(model: str) -> Tuple[str, str]:
    """``"provider/model-id"`` -> ``("provider", "model-id")``."""
    provider, sep, model_id = model.partition('/')
    if not sep or not provider or not model_id:
        raise AgentRuntimeError(
            f"Invalid model '{model}': expected provider/model-id"
        )
    return provider, model_id


def parse_providers(data: Dict[str, Any]) -> List[ModelInfo]:
    """Flatten a ``GET /provider`` response into a model list."""
    models: List[ModelInfo] = []
    for provider in data.get('all', data.get('providers', [])):
        provider_id = provider.get('id')
        if not provider_id:
            continue
        provider_name = provider.get('name', provider_id)
        for model_id, model_info in (provider.get('models') or {}).items():
            models.append(
                ModelInfo(
                    id=f'{provider_id}/{model_id}',
                    name=(model_info or {}).get('name', model_id),
                    provider=provider_name,
                )
            )
    models.sort(key=lambda m: (m.provider, m.name))
    return models


def parts_to_chunks(parts: List[Dict[str, Any]]) -> List[PromptChunk]:
    """Split response parts into visible text, reasoning and other parts."""
    chunks: List[PromptChunk] = []
    for part in parts:
        part_type = part.get('type')
        if part_type == 'text':
            if part.get('text'):
                chunks.append(PromptChunk(content=part['text']))
        elif part_type == 'reasoning':
            if part.get('text'):
                chunks.append(PromptChunk(reasoning=part['text']))
        else:
            chunks.append(PromptChunk(other_parts=[part]))
    return chunks


@dataclass
class OpencodeInstance:
    """Handle returned by :meth:`OpencodeRuntime.create_client`."""

    directory: str
    port: int
    process: Optional[asyncio.subprocess.Process]
    http: aiohttp.ClientSession
    stderr_tail: Deque[str] = field(default_factory=lambda: deque(maxlen=20))
    stderr_task: Optional[asyncio.Task] = None

    @property
    def base_url(self) -> str:
        return f'http://{OPENCODE_HOST}:{self.port}'

    @property
    def params(self) -> Dict[str, str]:
        return {'directory': self.directory}


class OpencodeRuntime:
    """:class:`~chat_worker.ports.AgentRuntime` over ``opencode serve``."""

    def __init__(
        self,
        opencode_bin: Optional[str] = None,
        startup_timeout: float = STARTUP_TIMEOUT,
    ):
        self.opencode_bin = find_opencode_binary(opencode_bin)
        self.startup_timeout = startup_timeout

    # -------------------------------------------------------------------------
    # Process management
    # -------------------------------------------------------------------------

    async def create_client(self, directory: str) -> OpencodeInstance:
        port = find_free_port()
        cmd = [self.opencode_bin, 'serve', '--port', str(port)]
        logger.info(f'Starting OpenCode server on port {port}')
        logger.debug(f'Command: {" ".join(cmd)}')

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=directory,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
                env={**os.environ, 'NO_COLOR': '1'},
            )
        except OSError as e:
            raise AgentRuntimeError(
                f'Failed to start OpenCode server ({self.opencode_bin}): {e}'
            ) from e

        instance = OpencodeInstance(
            directory=directory,
            port=port,
            process=process,
            http=aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=REQUEST_TIMEOUT)
            ),
        )
        instance.stderr_task = asyncio.create_task(self._drain_stderr(instance))

        try:
            await self._wait_until_ready(instance)
        except BaseException:
            await self.close_client(instance)
            raise

        logger.info(f'OpenCode server started at {instance.base_url}')
        return instance

    async def _drain_stderr(self, instance: OpencodeInstance) -> None:
        if instance.process is None or instance.process.stderr is None:
            return
        async for raw in instance.process.stderr:
            line = raw.decode(errors='replace').rstrip()
            if line:
                instance.stderr_tail.append(line)
                logger.debug(f'[opencode] {line}')

    async def _wait_until_ready(self, instance: OpencodeInstance) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.startup_timeout
        while loop.time() < deadline:
            process = instance.process
            if process is not None and process.returncode is not None:
                stderr = '\n'.join(instance.stderr_tail)
                raise AgentRuntimeError(
                    f'OpenCode server failed to start: {stderr}'
                )
            try:
                async with instance.http.get(
                    f'{instance.base_url}/session', params=instance.params
                ) as resp:
                    if resp.status < 500:
                        return
            except aiohttp.ClientError:
                pass
            await asyncio.sleep(0.25)
        raise AgentRuntimeError(
            f'OpenCode server did not answer within {self.startup_timeout}s'
        )

    async def close_client(self, instance: OpencodeInstance) -> None:
        if not instance.http.closed:
            await instance.http.close()

        process = instance.process
        if process is not None and process.returncode is None:
            process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=SHUTDOWN_TIMEOUT)
            except asyncio.TimeoutError:
                logger.warning('OpenCode server did not exit, killing it')
                process.kill()
                await process.wait()

        if instance.stderr_task is not None:
            instance.stderr_task.cancel()
            try:
                await instance.stderr_task
            except asyncio.CancelledError:
                pass
        logger.info('OpenCode server stopped')

    # -------------------------------------------------------------------------
    # HTTP API
    # -------------------------------------------------------------------------

    async def _request(
        self,
        instance: OpencodeInstance,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        timeout: Optional[aiohttp.ClientTimeout] = None,
    ) -> Any:
        url = f'{instance.base_url}{path}'
        kwargs: Dict[str, Any] = {'params': instance.params}
        if json is not None:
            kwargs['json'] = json
        if timeout is not None:
            kwargs['timeout'] = timeout
        try:
            async with instance.http.request(method, url, **kwargs) as resp:
                if resp.status == 404:
                    raise AgentRuntimeError(f'{method} {path}: not found')
                if resp.status >= 400:
                    text = await resp.text()
                    raise AgentRuntimeError(
                        f'{method} {path} failed ({resp.status}): {text}'
                    )
                if resp.content_type == 'application/json':
                    return await resp.json()
                return await resp.text()
        except aiohttp.ClientConnectionError as e:
            raise AgentRuntimeError(
                f'OpenCode server unreachable at {instance.base_url}: {e}'
            ) from e

    async def list_models(self, instance: OpencodeInstance) -> List[ModelInfo]:
        data = await self._request(instance, 'GET', '/provider')
        models = parse_providers(data if isinstance(data, dict) else {})
        if not models:
            logger.warning('No models reported by OpenCode')
        return models

    async def create_session(
        self, instance: OpencodeInstance, model: str
    ) -> RemoteSessionInfo:
        data = await self._request(instance, 'POST', '/session', json={})
        if not isinstance(data, dict) or not data.get('id'):
            raise AgentRuntimeError('Session creation returned no data')
        logger.debug(f'Created OpenCode session {data["id"]} (model: {model})')
        return RemoteSessionInfo.model_validate(data)

    async def list_sessions(
        self, instance: OpencodeInstance
    ) -> List[RemoteSessionInfo]:
        data = await self._request(instance, 'GET', '/session')
        return [RemoteSessionInfo.model_validate(s) for s in data or []]

    async def get_session(
        self, instance: OpencodeInstance, session_id: str
    ) -> RemoteSessionInfo:
        data = await self._request(instance, 'GET', f'/session/{session_id}')
        return RemoteSessionInfo.model_validate(data)

    async def send_prompt(
        self,
        instance: OpencodeInstance,
        session_id: str,
        content: str,
        model: Optional[str] = None,
    ) -> AsyncIterator[PromptChunk]:
        payload: Dict[str, Any] = {
            'parts': [{'type': 'text', 'text': content}],
        }
        if model:
            provider_id, model_id = split_model(model)
            payload['model'] = {'providerID': provider_id, 'modelID': model_id}

        # Prompts run as long as the agent needs.
        data = await self._request(
            instance,
            'POST',
            f'/session/{session_id}/message',
            json=payload,
            timeout=aiohttp.ClientTimeout(total=None, sock_connect=10),
        )
        parts = data.get('parts', []) if isinstance(data, dict) else []
        for chunk in parts_to_chunks(parts):
            yield chunk

    async def delete_session(
        self, instance: OpencodeInstance, session_id: str
    ) -> None:
        await self._request(instance, 'DELETE', f'/session/{session_id}')
