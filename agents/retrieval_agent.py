import asyncio
import json
import os
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from agents.keyword_agent import KeywordAnnotation
from config import SolverConfig
from model import ParseError


@dataclass(frozen=True)
class KnowledgeRecord:
    """One retrievable fact entry; identity is ``id``."""
    id: str
    topic: str
    content: str
    key_facts: Tuple[str, ...] = ()
    common_errors: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: Dict) -> "KnowledgeRecord":
        if not isinstance(data, dict) or not data.get('id'):
            raise ParseError("knowledge record needs an 'id'")
        return cls(
            id=str(data['id']),
            topic=str(data.get('topic') or ''),
            content=str(data.get('content') or ''),
            key_facts=tuple(str(x) for x in data.get('key_facts') or ()),
            common_errors=tuple(str(x) for x in data.get('common_errors') or ()),
        )


# rg 输出可能带有 "行号:" / "行号-" 前缀
SEARCH_PREFIX = re.compile(r'^\d+[:-]')


def parse_record_line(line: str) -> Optional[KnowledgeRecord]:
    """Parse one JSONL line, or return None when it is not a valid record."""
    line = SEARCH_PREFIX.sub('', line.strip(), count=1)
    if not line.startswith('{'):
        return None
    try:
        return KnowledgeRecord.from_dict(json.loads(line))
    except (json.JSONDecodeError, ParseError):
        return None


def parse_search_output(output: str) -> List[KnowledgeRecord]:
    """Parse search-tool output into records, silently dropping non-record lines."""
    records = []
    for line in output.split('\n'):
        record = parse_record_line(line)
        if record is not None:
            records.append(record)
    return records


# ============================================================
# 知识库接口
# ============================================================
class KnowledgeStore(ABC):
    """Read-only set of line-delimited knowledge files, searchable by keyword."""

    def __init__(self, knowledge_dir: str, files: Sequence[str]):
        self.knowledge_dir = knowledge_dir
        self.files = list(files)

    def path_for(self, file: str) -> str:
        return os.path.join(self.knowledge_dir, file)

    @abstractmethod
    async def search(self, keyword: str, file: str) -> List[KnowledgeRecord]:
        """
        Case-insensitive search of one knowledge file.

        Missing files, no matches and malformed lines all yield an empty list.
        """
        ...


class RipgrepKnowledgeStore(KnowledgeStore):
    """Shells out to ``rg`` for every (keyword, file) pair."""

    def __init__(self,
                 knowledge_dir: str,
                 files: Sequence[str],
                 rg_binary: str = "rg",
                 context_lines: int = 3,
                 max_output_bytes: int = 1024 * 1024):
        super().__init__(knowledge_dir, files)
        self.rg_binary = rg_binary
        self.context_lines = context_lines
        self.max_output_bytes = max_output_bytes

    def build_command(self, keyword: str, path: str) -> List[str]:
        # -F: 关键词按字面匹配，避免括号等字符被当成正则
        return [self.rg_binary, "-n", "-i", "-F", "-C", str(self.context_lines), "--", keyword, path]

    async def search(self, keyword: str, file: str) -> List[KnowledgeRecord]:
        path = self.path_for(file)
        if not os.path.exists(path):
            print(f"[WARNING] Knowledge file not found: {path}")
            return []

        try:
            process = await asyncio.create_subprocess_exec(
                *self.build_command(keyword, path),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            print(f"[WARNING] Search tool '{self.rg_binary}' not found on PATH")
            return []

        stdout, _ = await process.communicate()
        # rg 找不到匹配时返回非零 exit code 且无输出
        if not stdout:
            return []

        if len(stdout) > self.max_output_bytes:
            print(f"[WARNING] rg output for '{keyword}' in {file} truncated to {self.max_output_bytes} bytes")
            stdout = stdout[:self.max_output_bytes]
            stdout = stdout[:stdout.rfind(b'\n') + 1]

        return parse_search_output(stdout.decode('utf-8', errors='replace'))


class InMemoryKnowledgeStore(KnowledgeStore):
    """Loads every knowledge file once and scans lines with a substring match."""

    def __init__(self, knowledge_dir: str, files: Sequence[str]):
        super().__init__(knowledge_dir, files)
        self._lines: Dict[str, List[Tuple[str, KnowledgeRecord]]] = {}
        for file in self.files:
            path = self.path_for(file)
            if not os.path.exists(path):
                print(f"[WARNING] Knowledge file not found: {path}")
                continue
            entries = []
            with open(path, 'r', encoding='utf-8') as f:
                for line in f:
                    record = parse_record_line(line)
                    if record is not None:
                        entries.append((line.casefold(), record))
            self._lines[file] = entries

    async def search(self, keyword: str, file: str) -> List[KnowledgeRecord]:
        needle = keyword.casefold()
        return [record for line, record in self._lines.get(file, []) if needle in line]


def build_knowledge_store(config: SolverConfig) -> KnowledgeStore:
    if config.search_backend == "memory":
        return InMemoryKnowledgeStore(config.knowledge_dir, config.knowledge_files)
    return RipgrepKnowledgeStore(
        config.knowledge_dir,
        config.knowledge_files,
        rg_binary=config.rg_binary,
        context_lines=config.context_lines,
        max_output_bytes=config.max_output_bytes,
    )


# ============================================================
# 关键词过滤
# ============================================================
ASCII_WORD = re.compile(r'^[A-Za-z0-9_]+$')
CJK_CHAR = re.compile(r'[\u4e00-\u9fff]')


def is_searchable_keyword(keyword: str) -> bool:
    """
    Decide whether a keyword is worth a search.

    Pure ASCII word characters (option letters, numbers, identifiers) only add
    index noise. Keywords shorter than two characters are dropped unless they
    contain a CJK ideograph, since single characters matter for character-form
    questions.
    """
    keyword = keyword.strip()
    if not keyword or ASCII_WORD.match(keyword):
        return False
    if len(keyword) < 2 and not CJK_CHAR.search(keyword):
        return False
    return True


# ============================================================
# 并行检索 + 按 id 去重
# ============================================================
@dataclass(frozen=True)
class RetrievalResult:
    records: Tuple[KnowledgeRecord, ...]
    pairs: Tuple[Tuple[str, str], ...]
    rejected_keywords: Tuple[str, ...] = ()
    elapsed_ms: float = 0.0

    @property
    def ids(self) -> Tuple[str, ...]:
        return tuple(r.id for r in self.records)


class SearchExecutor:
    """Fans keyword x file searches out concurrently and merges the results."""

    def __init__(self, store: KnowledgeStore):
        self.store = store

    def plan(self, annotations: Sequence[KeywordAnnotation]) -> Tuple[List[Tuple[str, str]], List[str]]:
        """
        Turn annotations into (keyword, file) pairs.

        Annotations carrying a knowledge-file hint are searched in that file
        only; the rest are searched in every file.

        Returns:
            (unique pairs in first-seen order, rejected keywords)
        """
        pairs: Dict[Tuple[str, str], None] = {}
        rejected: Dict[str, None] = {}
        for annotation in annotations:
            hint = annotation.knowledge_file
            files = [hint] if hint and hint in self.store.files else self.store.files
            for term in annotation.terms():
                term = term.strip()
                if not is_searchable_keyword(term):
                    rejected[term] = None
                    continue
                for file in files:
                    pairs[(term, file)] = None
        return list(pairs), [t for t in rejected if t]

    async def search_pairs(self, pairs: Sequence[Tuple[str, str]]) -> List[KnowledgeRecord]:
        results = await asyncio.gather(*(self.store.search(keyword, file) for keyword, file in pairs))

        # 合并结果：同一 id 只收录第一次出现的记录
        seen_ids = set()
        merged = []
        for records in results:
            for record in records:
                if record.id not in seen_ids:
                    seen_ids.add(record.id)
                    merged.append(record)
        return merged

    async def retrieve(self, annotations: Sequence[KeywordAnnotation]) -> RetrievalResult:
        start = time.perf_counter()
        pairs, rejected = self.plan(annotations)
        records = await self.search_pairs(pairs) if pairs else []
        return RetrievalResult(
            records=tuple(records),
            pairs=tuple(pairs),
            rejected_keywords=tuple(rejected),
            elapsed_ms=(time.perf_counter() - start) * 1000,
        )
