import asyncio
from typing import Any, Dict, List, Tuple

from google import genai
from google.genai import types

from yoman.config.settings import GEMINI_API_KEY, GEMINI_BASE_URL, LLM_MAIN_MODEL
from yoman.datamodel import FunctionCall
from yoman.functions.base import auto_execute_tool, get_all_tools, get_functions_schemas
from yoman.llm.base import LLMClient, LLMContextItem
from yoman.logger import logger


class GeminiClient(LLMClient):
    WORLD_PREFIX = "[CONTEXT]"
    FALLBACK_TEXT = "Sorry, I couldn't answer just now. Please try again in a moment."
    MAX_LOOP_STEPS = 10
    API_RETRY_DELAYS_SECONDS = [5.0, 15.0]
    RETRYABLE_SIGNALS = (
        "429", "rate limit", "resource_exhausted", "temporarily unavailable",
        "timeout", "timed out", "502", "503", "504", "connection reset",
    )

    def __init__(self, base_url: str = GEMINI_BASE_URL, api_key: str = GEMINI_API_KEY, model: str = LLM_MAIN_MODEL, inst: str = "") -> None:
        self.model = model
        self.inst = inst
        self.client = genai.Client(api_key=api_key, http_options={"base_url": base_url} if base_url else None)

    @staticmethod
    def _text_message(role: str, text: str) -> Dict[str, Any]:
        return {"role": role, "parts": [{"text": text}]}

    def _is_retryable_error(self, error: Exception) -> bool:
        msg = str(error).lower()
        return any(s in msg for s in self.RETRYABLE_SIGNALS)

    def _convert_context_to_gemini(self, context: List[LLMContextItem]) -> Tuple[List[Dict[str, Any]], str]:
        """Gemini 只有 user / model 两种角色, system 并入 system_instruction, world 以前缀标记后作为 user"""
        converted: List[Dict[str, Any]] = []
        system_parts: List[str] = []

        for item in context:
            if not isinstance(item, dict):
                continue
            role = item.get("role")
            content = item.get("content", "")
            if role == "system":
                system_parts.append(content)
            elif role == "world":
                converted.append(self._text_message("user", f"{self.WORLD_PREFIX}\n{content}"))
            elif role == "user":
                converted.append(self._text_message("user", content))
            elif role == "assistant":
                converted.append(self._text_message("model", content))

        return converted, "\n\n".join(p for p in system_parts if p.strip())

    def _build_gemini_tools(self) -> List[types.Tool]:
        declarations = [
            types.FunctionDeclaration(
                name=schema.get("name", ""),
                description=schema.get("description", ""),
                parameters=schema.get("parameters", {"type": "object", "properties": {}}),
            )
            for schema in get_functions_schemas(list(get_all_tools().values()))
            if schema.get("type") == "function"
        ]
        return [types.Tool(function_declarations=declarations)] if declarations else []

    @staticmethod
    def _first_content(response: Any) -> Any | None:
        candidates = getattr(response, "candidates", None) or []
        if not candidates:
            return None
        return getattr(candidates[0], "content", None)

    def _extract_function_calls(self, content: Any) -> List[Tuple[str, Dict[str, Any]]]:
        calls: List[Tuple[str, Dict[str, Any]]] = []
        for part in getattr(content, "parts", None) or []:
            function_call = getattr(part, "function_call", None)
            if function_call is None or not function_call.name:
                continue
            calls.append((function_call.name, dict(function_call.args or {})))
        return calls

    async def _generate_with_retry(self, request_context: List[Any], config: types.GenerateContentConfig) -> Any:
        for idx, delay in enumerate([0.0, *self.API_RETRY_DELAYS_SECONDS]):
            if delay > 0:
                await asyncio.sleep(delay)
            try:
                return await self.client.aio.models.generate_content(
                    model=self.model,
                    contents=request_context,
                    config=config,
                )
            except Exception as e:
                is_last = idx == len(self.API_RETRY_DELAYS_SECONDS)
                if is_last or not self._is_retryable_error(e):
                    raise
                logger.warning(
                    f"Gemini 请求暂时失败，准备重试: attempt={idx + 1}/{len(self.API_RETRY_DELAYS_SECONDS) + 1}, error={e}"
                )

        raise RuntimeError("Gemini 请求重试异常退出")

    async def generate_response(
        self,
        user_id: str,
        context: List[LLMContextItem],
        append_inst: str | None = None,
        allow_tools: bool = True,
    ) -> str:
        request_context, system_from_context = self._convert_context_to_gemini(context)
        system_instruction = self.inst + (append_inst or "")
        if system_from_context:
            system_instruction = f"{system_instruction}\n\n{system_from_context}" if system_instruction else system_from_context

        config_kwargs: Dict[str, Any] = {"system_instruction": system_instruction}
        if allow_tools:
            config_kwargs["tools"] = self._build_gemini_tools()
        config = types.GenerateContentConfig(**config_kwargs)

        for _ in range(self.MAX_LOOP_STEPS):
            logger.trace(f"Gemini请求发起 Model:{self.model}; Context:{request_context}")
            response = await self._generate_with_retry(request_context, config)
            logger.trace(f"Gemini请求收到响应: {response}")

            content = self._first_content(response)
            function_calls = self._extract_function_calls(content) if allow_tools else []
            if not function_calls:
                text = (getattr(response, "text", None) or "").strip()
                if text:
                    return text
                logger.error("Gemini 返回空文本回复，返回兜底回复")
                return self.FALLBACK_TEXT

            # 原样回传模型输出的 content, 保留 thought_signature 等内部字段
            request_context.append(content)
            for name, arguments in function_calls:
                arguments["user_id"] = user_id
                result = await auto_execute_tool(FunctionCall(name=name, arguments=arguments))
                request_context.append({
                    "role": "user",
                    "parts": [{"function_response": {"name": name, "response": {"result": result}}}],
                })

        logger.error("Gemini 响应循环超过上限，返回兜底回复")
        return self.FALLBACK_TEXT
