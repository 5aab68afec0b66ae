"""Configuration helpers for the edu-agent backend."""

from __future__ import annotations

import os
from pathlib import Path

# 优先从项目根目录加载 .env，确保启动时能读取 LLM 等配置
_ROOT = Path(__file__).resolve().parent.parent
_env_file = _ROOT / ".env"
if _env_file.exists():
    from dotenv import load_dotenv

    load_dotenv(_env_file)


def _resolve_dir(value: str) -> Path:
    p = Path(value).expanduser()
    return p.resolve() if p.is_absolute() else (_ROOT / p).resolve()


class Settings:
    """Simple settings holder, read once from the environment."""

    def __init__(self) -> None:
        # SQLite 数据库路径（默认放在项目根目录下的 data 子目录）
        db_path_env = os.environ.get("EDU_AGENT_DB_PATH")
        if db_path_env:
            self.db_path = str(Path(db_path_env).expanduser())
        else:
            self.db_path = str(_ROOT / "data" / "edu_agent.db")

        # 内容块 YAML 文件；为空则不在启动时加载
        chunks_file = os.environ.get("EDU_AGENT_CHUNKS_FILE", "").strip()
        self.chunks_file = Path(chunks_file).expanduser() if chunks_file else None

        # 前端写入的 "latest session" 注册表目录
        self.registry_dir = _resolve_dir(os.environ.get("EDU_AGENT_REGISTRY_DIR", ".sessions"))
        # 报告输出目录
        self.reports_dir = _resolve_dir(os.environ.get("EDU_AGENT_REPORTS_DIR", "data/reports"))

        # ==== LLM（OpenAI 兼容 API）配置 ====
        # API Key：优先级 LLM_API_KEY > OPENAI_API_KEY
        self.llm_api_key = os.environ.get("LLM_API_KEY") or os.environ.get("OPENAI_API_KEY") or ""
        self.llm_base_url = os.environ.get(
            "EDU_AGENT_LLM_BASE_URL",
            "https://api.openai.com/v1",
        ).rstrip("/")
        self.llm_model = os.environ.get("EDU_AGENT_LLM_MODEL", "gpt-4o-mini")
        # 单次 HTTP 请求超时（秒）
        self.llm_timeout = float(os.environ.get("EDU_AGENT_LLM_TIMEOUT", "30") or "30")

        # ==== LLM 重试 ====
        self.llm_max_retries = int(os.environ.get("EDU_AGENT_LLM_MAX_RETRIES", "3") or "3")
        self.llm_retry_min_wait = float(os.environ.get("EDU_AGENT_LLM_RETRY_MIN_WAIT", "1") or "1")
        self.llm_retry_max_wait = float(os.environ.get("EDU_AGENT_LLM_RETRY_MAX_WAIT", "10") or "10")

        # ==== 每轮增强步骤的超时（秒）====
        # lead-in 失败不影响推进，超时即放弃
        self.lead_in_timeout = float(os.environ.get("EDU_AGENT_LEAD_IN_TIMEOUT", "4") or "4")
        self.report_timeout = float(os.environ.get("EDU_AGENT_REPORT_TIMEOUT", "10") or "10")

        # ==== 会话解析重试：100ms 起，指数 2，共 3 次 ====
        self.resolver_attempts = int(os.environ.get("EDU_AGENT_RESOLVER_ATTEMPTS", "3") or "3")
        self.resolver_base_delay = float(os.environ.get("EDU_AGENT_RESOLVER_BASE_DELAY", "0.1") or "0.1")

        # ==== API 认证 ====
        # 若设置了 EDU_AGENT_API_KEY，则所有 /api/* 端点需要 Authorization: Bearer <key>
        self.api_key = os.environ.get("EDU_AGENT_API_KEY", "").strip()

        self.log_level = os.environ.get("EDU_AGENT_LOG_LEVEL", "INFO").upper()
        # open-ended 模式与默认问候语中使用的助手名
        self.assistant_name = os.environ.get("EDU_AGENT_ASSISTANT_NAME", "Sanjay")
        # CORS 允许的前端来源，逗号分隔
        self.cors_origins = [
            o.strip()
            for o in os.environ.get(
                "EDU_AGENT_CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000"
            ).split(",")
            if o.strip()
        ]


settings = Settings()
