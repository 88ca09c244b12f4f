from typing import Dict, Type

from ..errors import LoadError
from .base import Generator
from .huggingface import HuggingFaceGenerator


GENERATORS: Dict[str, Type[Generator]] = {
    "hf": HuggingFaceGenerator,
}


def get_generator_class(model_type: str) -> Type[Generator]:
    """Resolve the generator backend for a model type.

    Args:
        model_type: Backend name ("hf")

    Returns:
        Generator class

    Raises:
        LoadError: If no backend is registered under that name
    """
    try:
        return GENERATORS[model_type]
    except KeyError:
        raise LoadError(
            f"Unknown model type: {model_type} (expected one of {', '.join(sorted(GENERATORS))})"
        ) from None
