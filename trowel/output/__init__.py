"""Bundle assembly and atomic publishing."""

from trowel.output.assembler import OutputAssembler, StagedBundle

__all__ = ["OutputAssembler", "StagedBundle"]
