"""Processor registry: maps job kinds to the coroutine that processes them."""

from collections.abc import Awaitable, Callable
from typing import Any, Optional

from call_pipeline.models import Job, ProcessingResult

Processor = Callable[[Job, dict[str, Any]], Awaitable[ProcessingResult]]


class ProcessorRegistry:
    """Registry for job processors."""

    def __init__(self):
        self._processors: dict[str, Processor] = {}

    def processor(self, kind: str):
        """
        Decorator to register a processor for a job kind.

        Usage:
            @registry.processor("extract-crm-fields")
            async def extract(job, ctx):
                ...
                return ProcessingResult.success(ProcessedOutcome(job.call_id))
        """

        def decorator(func: Processor):
            self._processors[kind] = func
            return func

        return decorator

    def register(self, kind: str, func: Processor) -> None:
        """Register a processor without the decorator."""
        self._processors[kind] = func

    def get_processor(self, kind: str) -> Optional[Processor]:
        """Get the processor for a kind, or None."""
        return self._processors.get(kind)

    def kinds(self) -> list[str]:
        """Job kinds with a registered processor."""
        return sorted(self._processors)

    def all_processors(self) -> dict[str, Processor]:
        """Get all registered processors."""
        return self._processors.copy()


# Global registry instance
processor_registry = ProcessorRegistry()
