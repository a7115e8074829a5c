"""
Find Block subclasses in user modules and files so they can be registered.

Backs ``blockstore register --module my_pkg.blocks`` and
``blockstore register --file ./my_blocks.py``.
"""

from __future__ import annotations

import importlib
import importlib.util
import inspect
import sys
from pathlib import Path
from types import ModuleType
from typing import Any

from .block import Block
from .errors import ValidationError
from .logging_config import get_logger

logger = get_logger(__name__)


def load_module(module_name: str) -> ModuleType:
    """
    Import a module by dotted name.

    Raises:
        ValidationError: if the import fails
    """
    try:
        return importlib.import_module(module_name)
    except Exception as e:
        raise ValidationError(
            f"Failed to import module {module_name!r}: {type(e).__name__}: {e}",
            metadata={"module": module_name},
            cause=e,
        ) from e


def load_file(path: str | Path) -> ModuleType:
    """
    Execute a Python file as a module.

    The file's directory is not added to ``sys.path``; the module is
    registered in ``sys.modules`` under a name derived from the file path.

    Raises:
        ValidationError: if the file is missing or fails to execute
    """
    path = Path(path).expanduser().resolve()
    if not path.is_file():
        raise ValidationError(f"File {str(path)!r} does not exist", metadata={"file": str(path)})

    module_name = f"_blockstore_user_{abs(hash(str(path)))}"
    spec = importlib.util.spec_from_file_location(module_name, path)
    if spec is None or spec.loader is None:
        raise ValidationError(f"Cannot load {str(path)!r} as a Python module", metadata={"file": str(path)})

    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    try:
        spec.loader.exec_module(module)
    except Exception as e:
        sys.modules.pop(module_name, None)
        raise ValidationError(
            f"Failed to load {str(path)!r}: {type(e).__name__}: {e}",
            metadata={"file": str(path)},
            cause=e,
        ) from e
    return module


def find_block_classes(module: ModuleType) -> list[type[Block]]:
    """Block subclasses defined in (not merely imported into) ``module``."""
    found = []
    for _, obj in inspect.getmembers(module, inspect.isclass):
        if issubclass(obj, Block) and obj is not Block and obj.__module__ == module.__name__:
            found.append(obj)
    return found


def register_blocks_from(module: ModuleType, client: Any) -> list[str]:
    """
    Register every block type defined in a module.

    Returns:
        Registered slugs, in definition order of discovery

    Raises:
        ValidationError: if the module defines no Block subclasses
    """
    classes = find_block_classes(module)
    if not classes:
        raise ValidationError(
            f"No Block subclasses found in {module.__name__!r}",
            metadata={"module": module.__name__},
        )
    slugs = []
    for block_cls in classes:
        slug = client.register_block_type(block_cls)
        logger.info("block_type_discovered", type_slug=slug, module=module.__name__)
        slugs.append(slug)
    return slugs
