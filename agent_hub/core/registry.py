from typing import Dict, Iterable, List, Optional

from .types import Executor, ExecutorDescriptor, ExecutorStatus

WEB_AGENT = ExecutorDescriptor(
    name="WebAgent",
    description=(
        "Drives a headless browser to accomplish a task on a website: opens the URL, "
        "reads the page, clicks, fills forms, scrolls and extracts structured data."
    ),
    required_params=("url", "task"),
    optional_params=("maxIterations",),
    capabilities=(
        "web scraping",
        "product search and price comparison",
        "form filling",
        "navigating multi-page sites",
        "extracting lists of items with prices, ratings and links",
    ),
    examples=(
        "Find wireless earbuds under $50 on amazon.com",
        "Get the top 10 stories from news.ycombinator.com",
        "Check the price of the iPhone 15 on flipkart.com",
    ),
)

SEARCH_AGENT = ExecutorDescriptor(
    name="SearchAgent",
    description="Runs web searches and returns ranked result snippets.",
    required_params=("query",),
    optional_params=("maxResults",),
    capabilities=("web search", "news lookup"),
    examples=("Search for the latest Python release notes",),
    status=ExecutorStatus.PLANNED,
)

ANALYSIS_AGENT = ExecutorDescriptor(
    name="AnalysisAgent",
    description="Summarizes, compares or computes statistics over provided data.",
    required_params=("data", "analysisType"),
    capabilities=("data analysis", "comparison", "summarization"),
    examples=("Compare these three laptops by price and rating",),
    status=ExecutorStatus.PLANNED,
)

CODE_AGENT = ExecutorDescriptor(
    name="CodeAgent",
    description="Writes, explains or reviews source code.",
    required_params=("codeTask", "language"),
    capabilities=("code generation", "code review", "debugging help"),
    examples=("Write a Python function that parses ISO dates",),
    status=ExecutorStatus.PLANNED,
)

DEFAULT_CATALOG = (WEB_AGENT, SEARCH_AGENT, ANALYSIS_AGENT, CODE_AGENT)


class ExecutorRegistry:
    """Name -> descriptor catalog plus the live executors backing the implemented ones."""

    def __init__(self, descriptors: Iterable[ExecutorDescriptor] = DEFAULT_CATALOG):
        self._descriptors: Dict[str, ExecutorDescriptor] = {d.name: d for d in descriptors}
        self._executors: Dict[str, Executor] = {}

    def register(self, executor: Executor) -> None:
        descriptor = executor.descriptor
        if descriptor.status != ExecutorStatus.IMPLEMENTED:
            raise ValueError(f"Cannot register planned executor {descriptor.name}")
        self._descriptors[descriptor.name] = descriptor
        self._executors[descriptor.name] = executor
        print(f"[Registry] Registered executor {descriptor.name}")

    def descriptor(self, name: str) -> Optional[ExecutorDescriptor]:
        return self._descriptors.get(name)

    def executor(self, name: str) -> Optional[Executor]:
        return self._executors.get(name)

    def is_routable(self, name: str) -> bool:
        """Implemented in the catalog and backed by a registered executor."""
        descriptor = self._descriptors.get(name)
        return (
            descriptor is not None
            and descriptor.status == ExecutorStatus.IMPLEMENTED
            and name in self._executors
        )

    def descriptors(self) -> List[ExecutorDescriptor]:
        return list(self._descriptors.values())

    def implemented(self) -> List[ExecutorDescriptor]:
        return [d for d in self._descriptors.values() if self.is_routable(d.name)]
