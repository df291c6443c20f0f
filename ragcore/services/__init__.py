"""
服务层

- ingestion.py : 知识入库（切分、去重、向量化、批量重建）
- retrieval.py : 知识检索（范围检索、重排序、上下文装配）
- analytics.py : 检索分析（有界队列 + 后台 worker）
- rag.py       : RAGService 门面与工厂函数
"""
