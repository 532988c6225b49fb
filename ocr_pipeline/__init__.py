"""
OCR Job Pipeline
================
Durable OCR jobs over zipped page-scan archives, producing TXT and DOCX
documents.

Architecture:
    - Entry Canonicalizer: Classifies archive entries into logical page frames
    - Frame Extractor: Materializes frames to working storage in submission order
    - Batch Recognition: Submits frame crops to an external OCR batch provider
    - Paragraph Assembler: Merges continuation frames into ordered paragraphs
    - Step State Machine: Drives a job through durable, retriable steps
    - Document Orchestrator: Renders, uploads and cleans up final artifacts

Version: 1.0.0
"""

__version__ = "1.0.0"
