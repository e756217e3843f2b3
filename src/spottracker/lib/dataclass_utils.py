"""Module dataclass_utils of spottracker.lib.

Collects useful functions that add up on top of the dataclasses
stdlib module.
"""

__authors__ = (
    'Michele Riva (@michele-riva)',
    )
__copyright__ = 'Copyright (c) 2019-2025 ViPErLEED developers'
__created__ = '2025-02-10'
__license__ = 'GPLv3+'

from dataclasses import dataclass
from dataclasses import field as data_field
from dataclasses import fields as data_fields
import functools
import sys

if sys.version_info < (3, 12):  # No frozen_default keyword in py3.11
    from typing_extensions import dataclass_transform
else:
    from typing import dataclass_transform


frozen = dataclass_transform(frozen_default=True)(
    functools.partial(dataclass, frozen=True)
    )


def as_dict(instance, skip=()):
    """Return a shallow dict of the init fields of a dataclass `instance`.

    Contrary to dataclasses.asdict, values are not deep-copied, so
    that numpy arrays and enumeration members are returned as they
    are.

    Parameters
    ----------
    instance : dataclass
        The dataclass instance to be converted.
    skip : Sequence of str, optional
        Names of fields not to be included. Default is an empty tuple.

    Returns
    -------
    values : dict
        Field names as keys, current attribute values as values.
    """
    return {f.name: getattr(instance, f.name)
            for f in data_fields(instance)
            if f.init and f.name not in skip}


def non_init_field(**kwargs):
    """Return a dataclass field not used for initialization."""
    try:
        kwargs['default_factory']
    except KeyError:  # Can't set a default if there's a factory
        kwargs.setdefault('default', None)
    kwargs['init'] = False
    kwargs.setdefault('repr', False)
    return data_field(**kwargs)


def set_frozen_attr(instance, attr_name, value):
    """Set an attribute of a frozen dataclass instance.

    Use only during __post_init__, i.e., before the instance
    is handed over to its users.
    """
    object.__setattr__(instance, attr_name, value)
