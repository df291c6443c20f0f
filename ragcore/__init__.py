"""
ragcore - 多租户 RAG 知识管道

把租户提供的文本转换为可检索的语义片段，并把用户查询转换为
按 token 预算装配、带来源标注的上下文。

使用示例：
    from ragcore import create_rag_service

    async with create_rag_service() as rag:
        await rag.ingest(item_id, tenant_id, text)
        result = await rag.retrieve_for_tenant(tenant_id, "退款政策")
"""

from ragcore.services.rag import RAGService, create_in_memory_rag_service, create_rag_service

__version__ = "0.1.0"

__all__ = ["RAGService", "create_in_memory_rag_service", "create_rag_service"]
