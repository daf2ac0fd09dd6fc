from abc import ABC, abstractmethod
from typing import Any


class ExtractionProvider(ABC):
    """One LLM backend able to turn callsheet text into schema JSON.

    ``direct`` is a single schema-constrained call; ``agent`` may take
    several turns and use tools before answering. Both return data that
    already passed schema verification for the requested shape.
    """

    name = "provider"

    @abstractmethod
    def direct(self, text: str, use_crew_first: bool = False) -> Any:
        ...

    @abstractmethod
    def agent(self, text: str, use_crew_first: bool = False) -> Any:
        ...

    def parse(self, mode: str, text: str, use_crew_first: bool = False) -> Any:
        if mode == "agent":
            return self.agent(text, use_crew_first)
        return self.direct(text, use_crew_first)
