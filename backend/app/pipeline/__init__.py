from app.pipeline.pipeline import DocumentResolutionPipeline

__all__ = ["DocumentResolutionPipeline"]
