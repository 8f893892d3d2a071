"""
Conditional update primitives shared by every service.

All writes that decide a race go through compare_and_set(): the expected
prior value is part of the UPDATE's WHERE clause, so the database itself
picks exactly one winner and every other caller sees zero affected rows.
"""

import logging
from typing import Any, Iterable, Union

from django.db import models
from django.utils import timezone

logger = logging.getLogger(__name__)


def _with_touch(model, changes: dict) -> dict:
    # QuerySet.update() bypasses auto_now, so keep updated_at honest here
    field_names = {f.name for f in model._meta.get_fields()}
    if "updated_at" in field_names and "updated_at" not in changes:
        changes = {**changes, "updated_at": timezone.now()}
    return changes


def compare_and_set(
    model,
    pk: Any,
    field: str,
    expected: Union[Any, Iterable[Any]],
    extra_filters: dict = None,
    **changes,
) -> bool:
    """
    Atomically apply ``changes`` to one row only if ``field`` still holds
    ``expected`` (a single value, or any of a list/tuple/set of values).

    Returns True when this caller won, False when the row was missing or
    the stored value had already moved on.
    """
    if isinstance(expected, (list, tuple, set, frozenset)):
        lookup = {f"{field}__in": list(expected)}
    else:
        lookup = {field: expected}

    queryset = model.objects.filter(pk=pk, **lookup)
    if extra_filters:
        queryset = queryset.filter(**extra_filters)

    affected = queryset.update(**_with_touch(model, changes))
    if affected == 0:
        logger.debug(
            "Conditional update lost on %s %s (%s expected %r)",
            model.__name__, pk, field, expected,
        )
    return affected == 1


def update_where(queryset: models.QuerySet, **changes) -> int:
    """Bulk conditional update; returns the number of rows affected."""
    return queryset.update(**_with_touch(queryset.model, changes))
