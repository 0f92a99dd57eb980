"""Runtime configuration from the environment."""

import logging
import os

from rehearsal_export.constants import DEFAULT_F0_METHOD, DEFAULT_INDEX_RATE
from rehearsal_export.normalization import NormalizationConfig

logger = logging.getLogger(__name__)

ENV_API_URL = "RVC_API_URL"
ENV_MODEL_NAME = "RVC_MODEL_NAME"
ENV_F0_METHOD = "RVC_F0_METHOD"
ENV_INDEX_RATE = "RVC_INDEX_RATE"


def normalization_from_env(environ=None) -> NormalizationConfig | None:
    """Build a NormalizationConfig from RVC_* variables.

    Returns None (normalization disabled) unless both the API URL and the
    model name are set.
    """
    if environ is None:
        environ = os.environ

    api_url = environ.get(ENV_API_URL, "").strip()
    model_name = environ.get(ENV_MODEL_NAME, "").strip()
    if not api_url or not model_name:
        return None

    f0_method = environ.get(ENV_F0_METHOD, "").strip() or DEFAULT_F0_METHOD
    raw_rate = environ.get(ENV_INDEX_RATE, "").strip()
    index_rate = DEFAULT_INDEX_RATE
    if raw_rate:
        try:
            index_rate = float(raw_rate)
        except ValueError:
            logger.warning("Ignoring invalid %s=%r", ENV_INDEX_RATE, raw_rate)
        else:
            if not 0.0 <= index_rate <= 1.0:
                logger.warning("Ignoring out-of-range %s=%r", ENV_INDEX_RATE, raw_rate)
                index_rate = DEFAULT_INDEX_RATE

    return NormalizationConfig(
        api_url=api_url,
        model_name=model_name,
        f0_method=f0_method,
        index_rate=index_rate,
    )
