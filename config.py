import os
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Tuple


class ConfigError(Exception):
    """Raised when the solver cannot start, e.g. no API credential is available."""


KEYWORD_STRATEGIES = ("rule", "llm")
SEARCH_BACKENDS = ("ripgrep", "memory")


@dataclass
class SolverConfig:
    """
    Solver configuration, built once at process start and handed to every component.

    Only ``from_env`` looks at the environment; everything downstream reads this object.
    """
    api_key: Optional[str] = None
    base_url: str = "https://openrouter.ai/api/v1"
    model: str = "google/gemma-3-12b-it"

    # 推理参数（固定配置，不随单次调用变化）
    temperature: float = 0.1
    max_tokens: int = 4000
    timeout: float = 120.0
    max_retries: int = 2
    retry_delay: float = 2.0

    # 关键词提取模型的参数
    extractor_max_tokens: int = 2000
    extractor_timeout: float = 60.0

    # 知识库与模板位置
    knowledge_dir: str = "knowledge"
    knowledge_files: Tuple[str, ...] = ("character-forms.jsonl", "idioms.jsonl", "literature.jsonl")
    patterns_path: str = "patterns/question-types.jsonl"
    templates_path: str = "templates/reasoning.jsonl"

    # 检索参数
    search_backend: str = "ripgrep"
    rg_binary: str = "rg"
    context_lines: int = 3
    max_output_bytes: int = 1024 * 1024

    keyword_strategy: str = "rule"
    parallel: bool = True
    max_concurrency: int = 0
    print_ongoing_status: bool = True

    extra_headers: Dict[str, str] = field(default_factory=lambda: {
        "HTTP-Referer": "https://github.com/taide-botrun",
        "X-Title": "TAIDE Botrun Skill Solver",
    })

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> "SolverConfig":
        """
        Build a config from environment variables, then apply non-None overrides.

        Args:
            environ: Mapping to read from (defaults to os.environ)
            **overrides: Field values that take precedence over the environment

        Returns:
            A validated SolverConfig
        """
        env = os.environ if environ is None else environ
        values = {}
        api_key = env.get("OPENROUTER_API_KEY") or env.get("API_KEY")
        if api_key:
            values["api_key"] = api_key
        if env.get("BASE_URL"):
            values["base_url"] = env["BASE_URL"]
        if env.get("MODEL"):
            values["model"] = env["MODEL"]

        values.update({k: v for k, v in overrides.items() if v is not None})
        config = cls(**values)
        config.validate()
        return config

    def validate(self) -> None:
        if not self.api_key:
            raise ConfigError("未设定 OPENROUTER_API_KEY (or API_KEY); cannot call the inference endpoint")
        if self.timeout <= 0 or self.extractor_timeout <= 0:
            raise ConfigError(f"timeout must be positive, got {self.timeout}/{self.extractor_timeout}")
        if self.max_retries < 0:
            raise ConfigError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.retry_delay < 0:
            raise ConfigError(f"retry_delay must be >= 0, got {self.retry_delay}")
        if self.keyword_strategy not in KEYWORD_STRATEGIES:
            raise ConfigError(
                f"keyword_strategy must be one of {KEYWORD_STRATEGIES}, got: {self.keyword_strategy}")
        if self.search_backend not in SEARCH_BACKENDS:
            raise ConfigError(
                f"search_backend must be one of {SEARCH_BACKENDS}, got: {self.search_backend}")
        if self.max_concurrency < 0:
            raise ConfigError(f"max_concurrency must be >= 0, got {self.max_concurrency}")
