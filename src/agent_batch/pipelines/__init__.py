"""Concrete pipelines built on the batch engine."""

from agent_batch.pipelines.code_audit import PIPELINE_NAME as CODE_AUDIT, CodeAuditPipeline

__all__ = ["CODE_AUDIT", "CodeAuditPipeline"]
