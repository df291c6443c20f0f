"""
批量重建知识向量脚本

用途：
    - 为尚未完成向量化的知识条目补跑入库（状态 pending 或 error）
    - 已完成的条目不会被处理；更换 Embedding 模型时需先删除旧片段
      （RAGService.delete_item_embeddings），再运行本脚本

用法示例：
    python scripts/reprocess_knowledge.py --tenant TENANT_ID
    python scripts/reprocess_knowledge.py --tenant TENANT_ID --stats
"""

import argparse
import asyncio
import json

from ragcore.config import get_settings
from ragcore.infra.logging import setup_logging
from ragcore.services.rag import create_rag_service


async def main() -> int:
    parser = argparse.ArgumentParser(description="Reprocess knowledge items missing embeddings")
    parser.add_argument("--tenant", required=True, help="Tenant ID")
    parser.add_argument("--stats", action="store_true", help="Only print embedding stats")
    args = parser.parse_args()

    setup_logging()
    settings = get_settings()

    async with create_rag_service(settings) as rag:
        if args.stats:
            stats = await rag.get_embedding_stats(args.tenant)
            print(json.dumps(stats.model_dump(), ensure_ascii=False, indent=2))
            return 0

        report = await rag.reprocess(args.tenant)
        print(json.dumps(report.to_dict(), ensure_ascii=False, indent=2))
        print(f"Processed {report.processed} items: {report.succeeded} succeeded, {report.failed} failed")
        return 1 if report.failed else 0


if __name__ == "__main__":
    raise SystemExit(asyncio.run(main()))
