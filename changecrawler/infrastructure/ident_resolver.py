import logging
from typing import Dict, Iterable

from changecrawler.domain.models import Ident
from changecrawler.infrastructure.config import IdentConfig, WorkspaceConfig

logger = logging.getLogger(__name__)

# Login GitHub reports for deleted accounts
GHOST_LOGIN = "ghost"


class IdentResolver:
    """
    Maps a provider login to its canonical identity using the workspace
    alias rules. Aliases are written as '<provider host>/<login>'.
    """

    def __init__(self, idents: Iterable[IdentConfig] = ()):
        self._by_alias: Dict[str, IdentConfig] = {}
        for entry in idents:
            for alias in entry.aliases:
                if alias in self._by_alias:
                    logger.warning(
                        f"Alias '{alias}' is claimed by both '{self._by_alias[alias].ident}' "
                        f"and '{entry.ident}'. Keeping the first."
                    )
                    continue
                self._by_alias[alias] = entry

    @classmethod
    def for_workspace(cls, workspace: WorkspaceConfig) -> "IdentResolver":
        return cls(workspace.idents)

    def resolve(self, host: str, login: str) -> Ident:
        """
        Unresolvable logins fall back to the raw login as both uid and muid,
        with no group membership.
        """
        login = login or GHOST_LOGIN
        entry = self._by_alias.get(f"{host}/{login}")
        if entry is None:
            return Ident(uid=login, muid=login)
        return Ident(uid=login, muid=entry.ident, groups=entry.groups)
