"""本地固定数据源：离线调试与测试用，不走网络"""

from typing import Iterable, List

from ..models import Article, SourceId
from .base import SourceAdapter


class StaticSourceAdapter(SourceAdapter):
    source_id = SourceId.STATIC.value

    def __init__(self, articles: Iterable[Article], source_id: str = SourceId.STATIC.value):
        super().__init__()
        self.source_id = source_id
        self._articles = list(articles)

    async def _fetch(self) -> List[Article]:
        return list(self._articles)
