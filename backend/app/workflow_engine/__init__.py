from app.workflow_engine.service import WorkflowAdvance, WorkflowStateEngine

__all__ = ["WorkflowAdvance", "WorkflowStateEngine"]
