"""Unit tests for registry module."""

from call_pipeline.models import ProcessedOutcome, ProcessingResult
from call_pipeline.registry import ProcessorRegistry, processor_registry


def test_processor_decorator():
    """Test registering a processor with the decorator."""
    registry = ProcessorRegistry()

    @registry.processor("extract-crm-fields")
    async def extract(job, ctx):
        return ProcessingResult.success(ProcessedOutcome(job.call_id))

    assert registry.get_processor("extract-crm-fields") is extract


def test_register_without_decorator():
    """Test register()."""
    registry = ProcessorRegistry()

    async def process(job, ctx):
        return ProcessingResult.success(ProcessedOutcome(job.call_id))

    registry.register("process-call", process)

    assert registry.get_processor("process-call") is process


def test_get_processor_unknown_kind():
    """Unknown kinds have no processor."""
    assert ProcessorRegistry().get_processor("nope") is None


def test_kinds_sorted():
    """kinds() lists registered kinds in order."""
    registry = ProcessorRegistry()

    async def noop(job, ctx):
        return ProcessingResult.success(ProcessedOutcome(job.call_id))

    registry.register("transcribe", noop)
    registry.register("extract-crm-fields", noop)

    assert registry.kinds() == ["extract-crm-fields", "transcribe"]


def test_all_processors_returns_copy():
    """Mutating all_processors() leaves the registry alone."""
    registry = ProcessorRegistry()

    async def noop(job, ctx):
        return ProcessingResult.success(ProcessedOutcome(job.call_id))

    registry.register("a", noop)
    processors = registry.all_processors()
    processors["b"] = noop

    assert registry.kinds() == ["a"]


def test_global_registry():
    """Test the global registry instance."""
    assert isinstance(processor_registry, ProcessorRegistry)
