"""
Contact Enrichment Services Package.

This package contains the enrichment pipeline: the agent loop, the tool
gateway, reconciliation and ICP analysis.

Example:
    from api.services import (
        ConversationOrchestrator,
        IdentityReconciler,
        analyze_icp,
    )

Key service modules:
- agent_loop: Conversation state machine over the LLM and tool service
- tool_gateway: Tool-service connection handle and single-call gateway
- identity_reconciler: Identifier/profile maps, auto-resolve and gap-fill
- row_merge: Order-preserving merge of profiles onto uploaded rows
- icp_analyzer: Attribute frequencies and cluster expressions
"""

from api.services.agent_loop import AgentConfig, AgentResult, AgentState, ConversationOrchestrator
from api.services.icp_analyzer import ICPAnalysis, ICPAttribute, analyze_icp, build_cluster_expression
from api.services.identifier_extractor import DetectedFields, detect_fields, extract_candidates
from api.services.identity_reconciler import IdentityReconciler, ReconciliationResult
from api.services.row_merge import merge_rows
from api.services.tool_gateway import ToolGateway, ToolServiceConnection, ToolSpec

__all__ = [
    # Agent
    "AgentConfig",
    "AgentResult",
    "AgentState",
    "ConversationOrchestrator",
    # Tool service
    "ToolGateway",
    "ToolServiceConnection",
    "ToolSpec",
    # Reconciliation
    "DetectedFields",
    "detect_fields",
    "extract_candidates",
    "IdentityReconciler",
    "ReconciliationResult",
    "merge_rows",
    # ICP
    "ICPAnalysis",
    "ICPAttribute",
    "analyze_icp",
    "build_cluster_expression",
]
