"""CLI entrypoint and programmatic interface for the pipeline worker."""

import argparse
import asyncio
import importlib
import logging
import os
import signal
import sys
from typing import Optional

from call_pipeline.config import ENV_SETTINGS, PipelineConfig
from call_pipeline.errors import StoreUnavailableError
from call_pipeline.invoker import ProcessingInvoker
from call_pipeline.lifecycle import LifecycleController
from call_pipeline.models import DEFAULT_KIND
from call_pipeline.registry import ProcessorRegistry, processor_registry


def setup_logging():
    """Setup logging configuration."""
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def load_processors(processors_module: Optional[str], logger: logging.Logger) -> None:
    """Import the module that registers extra processors, if one is configured."""
    if not processors_module:
        return
    try:
        importlib.import_module(processors_module)
        logger.info(f"Loaded processors from {processors_module}")
    except ImportError as e:
        logger.warning(f"Failed to import processors module {processors_module}: {e}")


def build_default_registry(
    config: PipelineConfig,
    registry: Optional[ProcessorRegistry] = None,
    logger: Optional[logging.Logger] = None,
) -> ProcessorRegistry:
    """Register the HTTP invoker for process-call jobs unless a processor exists."""
    if registry is None:
        registry = processor_registry
    if registry.get_processor(DEFAULT_KIND) is None:
        invoker = ProcessingInvoker(
            config.processing_base_url,
            internal_token=config.internal_token,
            timeout=config.invocation_timeout_seconds,
            logger=logger,
        )
        registry.register(DEFAULT_KIND, invoker.process)
    return registry


async def run_pipeline(
    config: Optional[PipelineConfig] = None,
    db_pool=None,
    registry: Optional[ProcessorRegistry] = None,
    logger: Optional[logging.Logger] = None,
    shutdown_event: Optional[asyncio.Event] = None,
    kinds: Optional[list[str]] = None,
):
    """
    Run the pipeline programmatically.

    This function can be imported and used in your own code to run the workers
    and the recovery loop as part of a larger application.

    Args:
        config: PipelineConfig instance. If None, will load from environment.
        db_pool: Database connection pool. If None, will create from config.
        registry: ProcessorRegistry instance. If None, will use the global registry.
        logger: Logger instance. If None, will create default logger.
        shutdown_event: Optional asyncio.Event for graceful shutdown.
        kinds: Job kinds to claim. If None, every registered kind.

    Example:
        ```python
        from call_pipeline import PipelineConfig, run_pipeline
        import asyncio

        asyncio.run(run_pipeline(config=PipelineConfig.from_env()))
        ```
    """
    if config is None:
        config = PipelineConfig.from_env()

    if logger is None:
        logger = logging.getLogger(__name__)

    load_processors(config.processors_module, logger)
    registry = build_default_registry(config, registry, logger)

    controller = LifecycleController(
        config,
        registry,
        logger=logger,
        db_pool=db_pool,
        kinds=kinds,
        shutdown_event=shutdown_event,
    )

    await controller.run()


def main():
    """Main entrypoint for the worker."""
    setup_logging()
    logger = logging.getLogger(__name__)

    parser = argparse.ArgumentParser(
        description="Call Pipeline Worker",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="environment:\n"
        + "\n".join(f"  {name:<44} {effect}" for name, effect in ENV_SETTINGS.items()),
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        default=None,
        help="Number of worker loops (default: CALL_PIPELINE_WORKER_CONCURRENCY)",
    )
    parser.add_argument(
        "--kinds",
        default=None,
        help="Comma separated job kinds to claim (default: all registered kinds)",
    )

    args = parser.parse_args()

    try:
        config = PipelineConfig.from_env()
        if args.concurrency is not None:
            config.worker_concurrency = args.concurrency
            config._validate()
    except ValueError as e:
        logger.error(f"Failed to load config: {e}")
        sys.exit(1)

    kinds = [k.strip() for k in args.kinds.split(",") if k.strip()] if args.kinds else None

    async def run():
        """Async main function."""
        loop = asyncio.get_running_loop()
        shutdown_event = asyncio.Event()

        def signal_handler(signum):
            logger.info(f"Received signal {signum}, shutting down...")
            shutdown_event.set()

        for signum in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(signum, signal_handler, signum)

        try:
            logger.info("Starting call pipeline worker...")
            await run_pipeline(
                config=config,
                registry=processor_registry,
                logger=logger,
                shutdown_event=shutdown_event,
                kinds=kinds,
            )
        except StoreUnavailableError as e:
            logger.error(f"Job store unreachable at startup: {e}")
            sys.exit(1)
        except Exception as e:
            logger.error(f"Fatal error in worker: {e}", exc_info=True)
            sys.exit(1)

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")


if __name__ == "__main__":
    main()
