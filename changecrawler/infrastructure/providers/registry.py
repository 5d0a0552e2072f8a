from typing import Dict, Type

from changecrawler.domain.models import Provider
from changecrawler.infrastructure.config import CrawlerConfig
from changecrawler.infrastructure.providers.base import DEFAULT_PAGE_SIZE, DEFAULT_TIMEOUT, ProviderClient
from changecrawler.infrastructure.providers.bugzilla_client import BugzillaClient
from changecrawler.infrastructure.providers.gerrit_client import GerritClient
from changecrawler.infrastructure.providers.github_client import GitHubGraphQLClient
from changecrawler.infrastructure.providers.gitlab_client import GitLabGraphQLClient
from changecrawler.infrastructure.providers.jira_client import JiraClient

CLIENTS: Dict[Provider, Type[ProviderClient]] = {
    Provider.GITHUB: GitHubGraphQLClient,
    Provider.GITLAB: GitLabGraphQLClient,
    Provider.GERRIT: GerritClient,
    Provider.JIRA: JiraClient,
    Provider.BUGZILLA: BugzillaClient,
}


def build_client(
    crawler: CrawlerConfig,
    page_size: int = DEFAULT_PAGE_SIZE,
    timeout: float = DEFAULT_TIMEOUT,
) -> ProviderClient:
    return CLIENTS[crawler.provider](crawler, page_size=page_size, timeout=timeout)
