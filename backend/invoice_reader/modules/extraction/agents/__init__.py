"""InvoiceReader Multi-Agent Orchestration Engine.

7-agent, 3-stage architecture for structured invoice extraction:
  Stage 1 - Classification:      LLM doc-type / origin / currency detection
  Stage 1 - Structural:          LLM core fields, parties, amounts, line items
  Stage 1 - Metadata:            file-name heuristics (no LLM)
  Stage 2 - Argentina Fiscal:    CUIT / CAE / IVA (argentina or unknown origin)
  Stage 2 - International Trade: tax ids, HS codes, incoterms, banking
  Stage 2 - Conflict Resolution: arbitrates Stage-1 disagreements
  Stage 3 - Cross Validation:    final coherence check + optimized record

Orchestrator: pipeline controller (no LLM). Merger: consolidation + scoring.
"""
