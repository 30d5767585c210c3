from .registry import DeferredParameterRegistry, ParameterHandle, ParameterState

__all__ = ["DeferredParameterRegistry", "ParameterHandle", "ParameterState"]
