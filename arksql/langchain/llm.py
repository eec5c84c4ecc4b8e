import logging

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage
from langchain_core.prompts import ChatPromptTemplate
from langchain_openai import AzureChatOpenAI
from openai import APIConnectionError, APITimeoutError, RateLimitError

from arksql.core.config import settings

logger = logging.getLogger(__name__)


def get_llm(temperature: float = settings.LLM_TEMPERATURE) -> AzureChatOpenAI:
    """Get the Azure OpenAI LLM configured with internal retries."""
    logger.info(f"Initializing Azure OpenAI LLM with deployment {settings.AZURE_OPENAI_DEPLOYMENT_NAME}")
    return AzureChatOpenAI(
        openai_api_key=settings.AZURE_OPENAI_API_KEY,
        azure_endpoint=settings.AZURE_OPENAI_ENDPOINT,
        openai_api_version=settings.AZURE_OPENAI_API_VERSION,
        deployment_name=settings.AZURE_OPENAI_DEPLOYMENT_NAME,
        model_name=settings.LLM_MODEL_NAME,
        temperature=temperature,
        verbose=settings.VERBOSE_LLM,
        max_retries=settings.LLM_MAX_RETRIES,
    )


def get_naming_llm() -> AzureChatOpenAI:
    """Small deployment used for chat names."""
    deployment = settings.AZURE_OPENAI_NAMING_DEPLOYMENT_NAME or settings.AZURE_OPENAI_DEPLOYMENT_NAME
    return AzureChatOpenAI(
        openai_api_key=settings.AZURE_OPENAI_API_KEY,
        azure_endpoint=settings.AZURE_OPENAI_ENDPOINT,
        openai_api_version=settings.AZURE_OPENAI_API_VERSION,
        deployment_name=deployment,
        temperature=0.3,
        max_retries=settings.LLM_MAX_RETRIES,
    )


# Transient provider failures worth another attempt
RETRYABLE_LLM_ERRORS = (APIConnectionError, APITimeoutError, RateLimitError)


def is_retryable_error(error: Exception) -> bool:
    return isinstance(error, RETRYABLE_LLM_ERRORS)


async def check_llm_connection(llm: BaseChatModel) -> bool:
    """Ask the chat model for a one-word reply."""
    try:
        prompt = ChatPromptTemplate.from_template("Say hello.")
        chain = prompt | llm
        response = await chain.ainvoke({})
        return isinstance(response, AIMessage) and bool(str(response.content).strip())
    except Exception as e:
        logger.warning(f"[Health] Chat model check failed: {str(e)}")
        return False
