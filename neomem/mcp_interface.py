"""
MCP Interface Layer using fastmcp for agent memory tools.
"""
from typing import Any, Dict, List, Optional

from fastmcp import FastMCP

from neomem.services.memory_management import MemoryManagementError, MemoryManagementService
from neomem.utils.config import config
from neomem.utils.logging_config import get_logger

logger = get_logger(__name__)

# Initialize FastMCP application
mcp = FastMCP('Neo4j Memory')
_memory_service: Optional[MemoryManagementService] = None


def get_memory_service() -> MemoryManagementService:
    global _memory_service
    if _memory_service is None:
        _memory_service = MemoryManagementService()
    return _memory_service


@mcp.tool()
def memory_recall(query: str, limit: int = 5, agent_id: str = 'default') -> List[Dict[str, Any]]:
    """Search long-term memories relevant to a query.

    Args:
        query: Natural language query
        limit: Maximum number of results to return (default: 5)
        agent_id: Agent whose memories are searched

    Returns:
        List of memories with id, text, category and score

    Raises:
        Exception: If search fails
    """
    try:
        if not query or not query.strip():
            return []

        results = get_memory_service().recall(query, limit=limit, agent_id=agent_id)
        logger.debug(f'MCP recall returned {len(results)} memories for agent {agent_id}')
        return [{'id': r.id, 'text': r.text, 'category': r.category, 'score': round(r.score, 4)} for r in results]

    except Exception as e:
        logger.error(f'Unexpected error in MCP recall: {e}')
        raise Exception(f'Memory recall failed: {e}')


@mcp.tool()
def memory_store(text: str,
                 importance: float = 0.7,
                 category: str = 'other',
                 agent_id: str = 'default',
                 session_key: Optional[str] = None) -> Dict[str, Any]:
    """Store a memory.

    Args:
        text: Memory text
        importance: Importance between 0 and 1 (default: 0.7)
        category: preference, fact, decision, entity or other
        agent_id: Owning agent
        session_key: Optional session identifier

    Returns:
        Dict with the memory id and whether it was newly created
    """
    try:
        outcome = get_memory_service().store_memory(text,
                                                    importance=importance,
                                                    category=category,
                                                    agent_id=agent_id,
                                                    session_key=session_key)
        return {'id': outcome.id, 'created': outcome.created, 'similarity': outcome.similarity}

    except MemoryManagementError as e:
        logger.error(f'Memory management error in MCP store: {e}')
        raise Exception(f'Memory store failed: {e}')


@mcp.tool()
def memory_forget(memory_id: Optional[str] = None, query: Optional[str] = None, agent_id: str = 'default') -> Dict[str, Any]:
    """Delete a memory by id, or look one up by query.

    Args:
        memory_id: ID of the memory to delete
        query: Text describing the memory to delete
        agent_id: Owning agent

    Returns:
        Dict with deleted ids and, when ambiguous, candidate memories
    """
    try:
        return get_memory_service().forget(memory_id=memory_id, query=query, agent_id=agent_id)

    except MemoryManagementError as e:
        logger.error(f'Memory management error in MCP forget: {e}')
        raise Exception(f'Memory forget failed: {e}')


@mcp.tool()
def memory_stats(agent_id: Optional[str] = None) -> Dict[str, Any]:
    """Memory counts by agent and category."""
    try:
        return get_memory_service().stats(agent_id)

    except Exception as e:
        logger.error(f'Unexpected error in MCP stats: {e}')
        raise Exception(f'Memory stats failed: {e}')


if __name__ == '__main__':
    transport = config.mcp.transport
    host = config.mcp.host
    port = config.mcp.port
    mcp.run(transport=transport, host=host, port=port)
