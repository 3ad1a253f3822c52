"""
Filter query shapes for CRM list endpoints.

CRM deployments differ in which filter syntax they accept. Callers describe
the conditions they want; the shapes below turn them into query parameters
and ``first_accepted`` tries each variant in order, moving on when the CRM
answers HTTP 400.
"""

from collections.abc import Callable, Iterator, Sequence

from sidecar.infrastructure.observability.logging import get_logger
from sidecar.services.crm.v8_client import QueryParams, V8Client
from sidecar.services.errors import UpstreamHttpError

logger = get_logger(__name__)

Conditions = Sequence[tuple[str, str]]
QueryShape = Callable[[Conditions], list[tuple[str, str]]]


def and_operator_shape(conditions: Conditions) -> list[tuple[str, str]]:
    params = [("filter[operator]", "and")]
    params.extend((f"filter[{field}][eq]", value) for field, value in conditions)
    return params


def plain_eq_shape(conditions: Conditions) -> list[tuple[str, str]]:
    return [(f"filter[{field}][eq]", value) for field, value in conditions]


DEFAULT_SHAPES: tuple[QueryShape, ...] = (and_operator_shape, plain_eq_shape)


def filter_variants(
    condition_sets: Sequence[Conditions], shapes: Sequence[QueryShape] = DEFAULT_SHAPES
) -> Iterator[list[tuple[str, str]]]:
    """Every shape for the first condition set, then every shape for the next, and so on."""
    seen: set[tuple] = set()
    for conditions in condition_sets:
        for shape in shapes:
            params = shape(conditions)
            marker = tuple(params)
            if marker in seen:
                continue
            seen.add(marker)
            yield params


async def first_accepted(
    client: V8Client,
    path: str,
    variants: Iterator[list[tuple[str, str]]],
    extra_params: QueryParams = (),
) -> dict | None:
    """
    Return the response of the first filter variant the CRM accepts.

    Returns None when every variant was rejected with HTTP 400. Any other
    failure propagates.
    """
    attempts = 0
    for params in variants:
        attempts += 1
        try:
            return await client.get(path, [*params, *extra_params])
        except UpstreamHttpError as e:
            if e.status != 400:
                raise
            logger.debug("CRM rejected filter shape, trying next", path=path, attempt=attempts)

    logger.warning("CRM rejected every filter shape", path=path, attempts=attempts)
    return None
