from __future__ import annotations


class ConfigError(ValueError):
    """Missing or invalid configuration. Fails the task before any provider call."""


class ProviderError(RuntimeError):
    """Transport or API failure talking to an LLM provider."""


class ValidationError(ValueError):
    """Provider output that does not match the expected shape."""


class TextIntegrityError(ValidationError):
    """Annotated text that no longer matches the source text."""


class GenerationTimeout(TimeoutError):
    pass


class LeaseLostError(RuntimeError):
    """The task version moved on; another worker owns it now."""


class PipelineStageError(RuntimeError):
    def __init__(self, stage: str, message: str) -> None:
        super().__init__(f"{stage}: {message}")
        self.stage = stage
