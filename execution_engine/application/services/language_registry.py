"""
Language Runtime Registry

Maps language ids and aliases to their runtime descriptors.
"""

from typing import Dict, Iterable, List

from execution_engine.domain.errors import UnsupportedLanguageError
from execution_engine.domain.value_objects import LanguageDescriptor


class LanguageRegistry:
    """
    Read-only lookup of language descriptors.

    Lookup is case-insensitive and honours each descriptor's aliases. The
    registry is built once at startup and never mutated afterwards.
    """

    def __init__(self, descriptors: Iterable[LanguageDescriptor]):
        self._descriptors: Dict[str, LanguageDescriptor] = {}
        self._aliases: Dict[str, str] = {}
        for descriptor in descriptors:
            language_id = descriptor.id.lower()
            self._descriptors[language_id] = descriptor
            for alias in descriptor.aliases:
                self._aliases[alias.lower()] = language_id

    def resolve(self, language_id: str) -> LanguageDescriptor:
        """
        Find the descriptor for a language id or alias.

        Raises:
            UnsupportedLanguageError: If the language is unknown
        """
        key = (language_id or "").strip().lower()
        key = self._aliases.get(key, key)
        descriptor = self._descriptors.get(key)
        if descriptor is None:
            raise UnsupportedLanguageError(language_id)
        return descriptor

    def supported(self) -> List[str]:
        """Sorted list of canonical language ids."""
        return sorted(self._descriptors)

    def __contains__(self, language_id: str) -> bool:
        try:
            self.resolve(language_id)
        except UnsupportedLanguageError:
            return False
        return True
