import logging

from pydantic import ValidationError as PydanticValidationError

from browser import SessionPool
from catalog import CatalogRefresher
from config import settings
from database import CatalogStore
from encoder import CompletionEncoder, model_list_response
from errors import AdapterError, CatalogRefreshError, ModelNotFoundError, ValidationError
from schemas import ChatRequest
from watcher import CompletionRun, CompletionWatcher, WatchState, format_messages

logger = logging.getLogger(__name__)


class ChatAdapter:
    """Entry point for the HTTP layer: catalog lookups and UI-driven completions."""

    def __init__(self, store=None, refresher=None, pool=None, watcher=None):
        self.store = store or CatalogStore(settings.DB_PATH)
        self.refresher = refresher or CatalogRefresher(self.store)
        self.pool = pool or SessionPool()
        self.watcher = watcher or CompletionWatcher()

    async def start(self):
        self.store.open()
        try:
            await self.refresher.get_models_list()
        except CatalogRefreshError as e:
            logger.warning(f"Initial model discovery failed: {e}")

    async def close(self):
        await self.pool.close_all()
        self.store.close()

    async def list_models(self, force_refresh=False) -> dict:
        records = await self.refresher.get_models_list(force_refresh=force_refresh)
        return model_list_response(records)

    async def resolve_group(self, model: str) -> str:
        group = self.store.find_group(model)
        if group:
            return group

        logger.info(f"Model {model} not found in cache, refreshing...")
        try:
            await self.refresher.refresh()
        except CatalogRefreshError as e:
            logger.warning(f"Refresh for unknown model {model} failed: {e}")
        group = self.store.find_group(model)
        if not group:
            raise ModelNotFoundError(model)
        return group

    @staticmethod
    def parse_request(body) -> ChatRequest:
        if isinstance(body, ChatRequest):
            return body
        if not isinstance(body, dict):
            raise ValidationError("Request body must be a JSON object")
        if not body.get("model"):
            raise ValidationError("Model is required")
        messages = body.get("messages")
        if not isinstance(messages, list) or not messages:
            raise ValidationError("Messages array is required and must not be empty")
        try:
            return ChatRequest.model_validate(body)
        except PydanticValidationError as e:
            first = e.errors()[0]
            where = ".".join(str(p) for p in first.get("loc", ()))
            raise ValidationError(f"Invalid value for '{where}': {first.get('msg')}") from e

    async def complete(self, body):
        """Return a response dict, or an async iterator of chunks when streaming."""
        request = self.parse_request(body)
        group = await self.resolve_group(request.model)
        prompt = format_messages(request.messages)
        encoder = CompletionEncoder(request.model, prompt)

        if request.stream:
            return self._stream(group, request, prompt, encoder)

        result = await self._drive(group, request, prompt)
        return encoder.completion(result)

    async def _drive(self, group, request, prompt):
        run = CompletionRun(group=group, model=request.model)
        run.transition(WatchState.NAVIGATING)
        try:
            async with self.pool.lease(group) as session:
                result = await self.watcher.run(
                    session.page,
                    request.model,
                    prompt,
                    temperature=request.temperature,
                    stream=request.stream,
                    run=run,
                )
                if result.partial:
                    self.pool.invalidate(session)
        except AdapterError:
            run.transition(WatchState.FAILED)
            logger.exception(f"Completion failed for {request.model} ({group})")
            raise
        logger.info(f"Completed {request.model} ({group}): {len(result.content)} chars, state {run.state.value}")
        return result

    async def _stream(self, group, request, prompt, encoder):
        yield encoder.role_chunk()
        try:
            result = await self._drive(group, request, prompt)
        except AdapterError as e:
            yield e.to_payload()
            return
        for chunk in encoder.body_chunks(result):
            yield chunk


adapter = ChatAdapter()
