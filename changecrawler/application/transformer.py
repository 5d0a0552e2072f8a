import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Type

from changecrawler.domain.exceptions import UnsupportedRecord
from changecrawler.domain.models import Change, CrawlerEntity, Document, Issue, Provider
from changecrawler.infrastructure.acl.base import RecordTranslator
from changecrawler.infrastructure.acl.bugzilla import BugzillaTranslator
from changecrawler.infrastructure.acl.gerrit import GerritTranslator
from changecrawler.infrastructure.acl.github import GitHubTranslator
from changecrawler.infrastructure.acl.gitlab import GitLabTranslator
from changecrawler.infrastructure.acl.jira import JiraTranslator
from changecrawler.infrastructure.ident_resolver import IdentResolver

logger = logging.getLogger(__name__)

TRANSLATORS: Dict[Provider, Type[RecordTranslator]] = {
    Provider.GITHUB: GitHubTranslator,
    Provider.GITLAB: GitLabTranslator,
    Provider.GERRIT: GerritTranslator,
    Provider.JIRA: JiraTranslator,
    Provider.BUGZILLA: BugzillaTranslator,
}


def build_translator(entity: CrawlerEntity, resolver: IdentResolver) -> RecordTranslator:
    return TRANSLATORS[entity.provider](entity, resolver)


@dataclass
class TransformResult:
    """Normalized documents of one raw page and what had to be left out."""
    documents: List[Document] = field(default_factory=list)
    unsupported: int = 0
    invalid: int = 0

    @property
    def skipped(self) -> int:
        return self.unsupported + self.invalid

    def without(self, ids: Iterable[str]) -> "TransformResult":
        """The same page with the documents of the given ids left out."""
        excluded = set(ids)
        return TransformResult(
            documents=[document for document in self.documents if document.id not in excluded],
            unsupported=self.unsupported,
            invalid=self.invalid,
        )

    @property
    def high_water_mark(self) -> Optional[datetime]:
        if not self.documents:
            return None
        return max(document.activity_at for document in self.documents)

    @property
    def changes(self) -> int:
        return sum(1 for document in self.documents if isinstance(document, Change))

    @property
    def issues(self) -> int:
        return sum(1 for document in self.documents if isinstance(document, Issue))

    @property
    def events(self) -> int:
        return len(self.documents) - self.changes - self.issues


def transform_page(translator: RecordTranslator, records: Iterable[Dict[str, Any]]) -> TransformResult:
    """
    Normalizes every raw record of a page. A record that cannot be mapped is
    logged and counted, and never aborts the rest of the page.

    Documents are de-duplicated by id, the last occurrence winning, so a page
    that delivers the same provider object twice yields it once.
    """
    result = TransformResult()
    by_id: Dict[str, Document] = {}

    for raw in records:
        if not isinstance(raw, dict):
            result.invalid += 1
            logger.warning(f"[{translator.entity}] Skipping non-object record of type {type(raw).__name__}.")
            continue
        try:
            documents = translator.to_domain(raw)
        except UnsupportedRecord as e:
            result.unsupported += 1
            logger.info(f"[{translator.entity}] Skipping record {translator.natural_key(raw)}: {e}")
            continue
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            result.invalid += 1
            logger.warning(
                f"[{translator.entity}] Skipping malformed record {translator.natural_key(raw)}: "
                f"{type(e).__name__}: {e}"
            )
            continue

        for document in documents:
            by_id.pop(document.id, None)
            by_id[document.id] = document

    result.documents = list(by_id.values())
    return result
