# Swiggy sales star-schema pipeline
# Layer 1: staging, Layer 2: warehouse, Layer 3: reporting

from .pipeline_orchestrator import DataPipelineOrchestrator, DataQualityChecker
from .master_pipeline import MasterPipelineRunner

__all__ = ['DataPipelineOrchestrator', 'DataQualityChecker', 'MasterPipelineRunner']
