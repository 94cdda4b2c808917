"""Base classes for building and caching Numba CUDA kernels."""

from abc import ABC, abstractmethod
from typing import Any, Set, Tuple

from attrs import define, field, fields, has
from numpy import array_equal, asarray, ndarray

from cubdf._utils import (
    in_attr,
    PrecisionDType,
    precision_validator,
    precision_converter,
)


@define
class CUDAFactoryConfig:
    """Base class for CUDAFactory compile settings containers.

    Subclasses should be defined with the ``@attrs.define`` decorator and
    hold every value that is baked into a compiled kernel.

    .. warning::

        **All field modifications MUST be done via the :meth:`update` method**
        (normally through :meth:`CUDAFactory.update_compile_settings`).
        Direct attribute assignment bypasses cache invalidation, so a stale
        kernel keeps running with the old constants.
    """

    precision: PrecisionDType = field(
        validator=precision_validator, converter=precision_converter
    )

    def update(
        self, updates_dict: dict = None, **kwargs
    ) -> Tuple[Set[str], Set[str]]:
        """Update configuration fields with new values.

        Parameters
        ----------
        updates_dict
            Mapping of setting names to new values. Keys are the public
            (non-underscored) field names.
        **kwargs
            Additional settings to update.

        Returns
        -------
        tuple[set[str], set[str]]
            recognized: Names of settings that matched known fields.
            changed: Names of settings whose values were updated.
        """
        if updates_dict is None:
            updates_dict = {}
        updates_dict = updates_dict.copy()
        updates_dict.update(kwargs)

        recognized = set()
        changed = set()
        field_map = {}
        for fld in fields(type(self)):
            field_map[fld.name] = fld
            if fld.alias is not None:
                field_map[fld.alias] = fld

        for key, value in updates_dict.items():
            fld = field_map.get(key)
            if fld is None:
                continue
            recognized.add(key)
            old_value = getattr(self, fld.name)

            if isinstance(old_value, ndarray) or isinstance(value, ndarray):
                value_changed = not array_equal(
                    asarray(old_value), asarray(value)
                )
            else:
                value_changed = old_value != value

            if value_changed:
                setattr(self, fld.name, value)
                changed.add(key)

        return recognized, changed


@define
class CUDADispatcherCache:
    """Base class for containers of compiled kernels."""

    pass


class CUDAFactory(ABC):
    """Factory for creating and caching CUDA kernels.

    Subclasses implement :meth:`build` to compile their kernels and return
    them in a :class:`CUDADispatcherCache` subclass. Compile settings are
    stored as attrs classes and any change invalidates the cache so kernels
    are rebuilt on next access.

    Notes
    -----
    Always fetch kernels through :meth:`get_cached_output` at the point of
    use. Holding on to a kernel across an ``update_compile_settings`` call
    keeps the stale build alive.
    """

    def __init__(self):
        self._compile_settings = None
        self._cache_valid = True
        self._cache = None

    @abstractmethod
    def build(self):
        """Build and return the cached kernels.

        Returns
        -------
        CUDADispatcherCache
            Container of compiled kernels.
        """
        return None

    def setup_compile_settings(self, compile_settings):
        """Attach a container of compile-critical settings to the object.

        Parameters
        ----------
        compile_settings : attrs class
            Settings object used to configure the kernels.

        Notes
        -----
        Any existing settings are replaced.
        """
        if not has(compile_settings):
            raise TypeError(
                "Compile settings must be an attrs class instance."
            )
        self._compile_settings = compile_settings
        self._invalidate_cache()

    @property
    def cache_valid(self) -> bool:
        """bool: ``True`` if cached outputs are up to date."""

        return self._cache_valid

    @property
    def compile_settings(self):
        """Return the current compile settings object."""
        return self._compile_settings

    def update_compile_settings(
        self, updates_dict=None, silent=False, **kwargs
    ) -> Set[str]:
        """Update compile settings with new values.

        Parameters
        ----------
        updates_dict : dict, optional
            Mapping of setting names to new values.
        silent : bool, default=False
            Suppress errors for unrecognised parameters.
        **kwargs
            Additional settings to update.

        Returns
        -------
        set[str]
            Names of settings that were recognised.

        Raises
        ------
        ValueError
            If compile settings have not been set up.
        KeyError
            If an unrecognised parameter is supplied and ``silent`` is
            ``False``.
        """
        if updates_dict is None:
            updates_dict = {}
        updates_dict = updates_dict.copy()
        updates_dict.update(kwargs)
        if updates_dict == {}:
            return set()

        if self._compile_settings is None:
            raise ValueError(
                "Compile settings must be set up using "
                "self.setup_compile_settings before updating."
            )
        recognized, changed = self._compile_settings.update(updates_dict)

        unrecognised = set(updates_dict.keys()) - recognized
        if unrecognised and not silent:
            invalid = ", ".join(sorted(unrecognised))
            raise KeyError(
                f"'{invalid}' is not a valid compile setting for this "
                "object, and so was not updated.",
            )
        if changed:
            self._invalidate_cache()

        return recognized

    def _invalidate_cache(self):
        """Mark cached kernels as invalid."""
        self._cache_valid = False

    def _build(self):
        """Rebuild cached outputs."""
        build_result = self.build()

        if not isinstance(build_result, CUDADispatcherCache):
            raise TypeError(
                "build() must return an attrs class (CUDADispatcherCache "
                "subclass)"
            )

        self._cache = build_result
        self._cache_valid = True

    def get_cached_output(self, output_name: str) -> Any:
        """Return a named cached output, rebuilding if settings changed.

        Raises
        ------
        KeyError
            If ``output_name`` is not present in the cache.
        """
        if not self.cache_valid:
            self._build()
        if self._cache is None:
            raise RuntimeError("Cache has not been initialized by build().")
        if not in_attr(output_name, self._cache):
            raise KeyError(
                f"Output '{output_name}' not found in cached outputs."
            )
        return getattr(self._cache, output_name)

    @property
    def precision(self) -> type:
        """Return the precision dtype used by compiled kernels."""
        return self.compile_settings.precision
