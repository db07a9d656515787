from abc import ABC, abstractmethod
from typing import Any, Dict

from yoman.datamodel import FunctionCall
from yoman.logger import logger


class BaseFunction(ABC):
    @property
    @abstractmethod
    def tool_schema(self) -> dict:
        pass

    @abstractmethod
    async def execute(self, *args, **kwargs) -> str:
        pass


def get_functions_schemas(functions: list[BaseFunction]) -> list[dict]:
    return [func.tool_schema for func in functions]


_all_tools: dict[str, BaseFunction] = {}


def register_tool(tool):
    if isinstance(tool, type):  # 如果传入的是类，则实例化
        tool = tool()
    name = tool.tool_schema["name"]
    if name not in _all_tools:
        logger.debug(f"注册工具: {name} -> {tool.__class__.__name__}")
        _all_tools[name] = tool
    return tool


def get_all_tools() -> Dict[str, BaseFunction]:
    return _all_tools


def _clean_arguments(tool: BaseFunction, arguments: Dict[str, Any]) -> Dict[str, Any]:
    """丢弃 schema 之外的参数; 模型常把未使用的可选参数填成空字符串, 统一视为未提供"""
    allowed = set(tool.tool_schema.get("parameters", {}).get("properties", {})) | {"user_id"}
    cleaned = {}
    for key, value in arguments.items():
        if key not in allowed:
            logger.warning(f"工具 {tool.tool_schema['name']} 收到未知参数, 已忽略: {key}")
            continue
        if isinstance(value, str) and value.strip() == "":
            continue
        cleaned[key] = value
    return cleaned


async def auto_execute_tool(function_call: FunctionCall) -> str:
    tool = _all_tools.get(function_call.name)
    if not tool:
        logger.error(f"LLM调用了未注册的工具: {function_call.name}")
        return "This tool is not registered and cannot be executed."

    logger.trace(f"调用工具: {function_call.name}, 参数: {function_call.arguments}")
    arguments = _clean_arguments(tool, function_call.arguments)
    if arguments.get("user_id") is None:
        logger.warning(f"调用工具 {function_call.name} 时未提供 user_id 参数，无法确定预约人")
        return "Cannot identify the customer for this request."

    return await tool.execute(**arguments)


__all__ = ["BaseFunction", "get_functions_schemas", "register_tool", "auto_execute_tool", "get_all_tools", "FunctionCall"]
