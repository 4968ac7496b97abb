"""
Operator implementations, registered in the shared `operator_registry`.

Implementations are generator functions `f(args, sources, query, env)`:

- `args`: `OperatorArgs` with the (validated) operator parameters
- `sources`: slot name to initialized source (`QueryProcessor`) or list of them
- `query`: the `QueryContext` to produce chunks for
- `env`: the `ExecutionEnv` (dataset access, tiling specification, user)
"""
from typing import Callable

from geoengine_driver.engine import OPERATOR_ARGUMENT_NAMES
from geoengine_driver.operators import OperatorRegistry, OperatorSpec

operator_registry = OperatorRegistry(argument_names=OPERATOR_ARGUMENT_NAMES)


def operator(spec: OperatorSpec) -> Callable:
    """Decorator for registering operator implementations"""
    return operator_registry.operator(spec)


# Import implementation modules to register their operators
from geoengine_driver.processing import plots, raster, sources, vector  # noqa: E402,F401
