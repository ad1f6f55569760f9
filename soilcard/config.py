import os
from pathlib import Path
from typing import Optional

from .types import ProcessConfig


def load_config(
    out_root: Optional[str] = None,
    azure_endpoint: Optional[str] = None,
    azure_deployment: Optional[str] = None,
    azure_api_key: Optional[str] = None,
    api_timeout: Optional[float] = None,
    api_max_retries: Optional[int] = None,
    skip_existing: bool = False,
) -> ProcessConfig:
    root = Path(out_root or os.getenv("PIPELINE_OUT_ROOT", "uploads")).expanduser().resolve()
    root.mkdir(parents=True, exist_ok=True)

    cfg = ProcessConfig(
        out_root=root,
        azure_endpoint=azure_endpoint or os.getenv("AZURE_OPENAI_ENDPOINT"),
        azure_deployment=azure_deployment or os.getenv("AZURE_OPENAI_DEPLOYMENT"),
        azure_api_key=azure_api_key or os.getenv("AZURE_OPENAI_API_KEY"),
        api_timeout=float(api_timeout or os.getenv("API_TIMEOUT", "300")),
        api_max_retries=int(api_max_retries if api_max_retries is not None else os.getenv("API_MAX_RETRIES", "2")),
        skip_existing=skip_existing or os.getenv("SKIP_EXISTING", "0") == "1",
    )
    return cfg
