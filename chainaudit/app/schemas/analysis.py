"""
Intermediate stage outputs.

PreprocessResult is produced by the preprocess stage and consumed by the
parser. ParseResult is a coarse structural model (functions, types,
imports) produced heuristically, not by a compiler front end.
"""

from __future__ import annotations

from typing import Dict, List, Literal

from pydantic import BaseModel, ConfigDict, Field


FileType = Literal["source", "config", "dependency", "documentation"]


# ----------------------------------------------------------------------
# Preprocess
# ----------------------------------------------------------------------


class ProcessedFile(BaseModel):
    path: str
    file_type: FileType
    content: str = Field(..., description="Sanitized content, line numbers preserved")
    size: int = Field(..., description="Original size in bytes")
    line_count: int
    complexity: int = Field(
        ...,
        description="1 + number of branching keywords",
    )
    content_hash: str

    model_config = ConfigDict(frozen=True, extra="forbid")


class Dependency(BaseModel):
    name: str
    version: str
    manifest: str

    model_config = ConfigDict(frozen=True, extra="forbid")


class ProjectMetadata(BaseModel):
    total_files: int
    source_files: int
    total_lines: int
    total_size: int
    complexity: int
    languages: List[str] = Field(default_factory=list)
    frameworks: List[str] = Field(default_factory=list)
    features: List[str] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True, extra="forbid")


class PreprocessResult(BaseModel):
    job_id: str
    network: str
    files: List[ProcessedFile]
    dependencies: List[Dependency] = Field(default_factory=list)
    metadata: ProjectMetadata

    def source_files(self) -> List[ProcessedFile]:
        return [f for f in self.files if f.file_type == "source"]

    model_config = ConfigDict(frozen=True, extra="forbid")


# ----------------------------------------------------------------------
# Parse
# ----------------------------------------------------------------------


class FunctionInfo(BaseModel):
    name: str
    file: str
    line: int
    end_line: int
    is_public: bool
    attributes: List[str] = Field(
        default_factory=list,
        description="Outer attributes, e.g. '#[private]'",
    )
    signature: str
    body: str = Field(..., description="Text from the signature to the closing brace")

    model_config = ConfigDict(frozen=True, extra="forbid")


class StructInfo(BaseModel):
    name: str
    file: str
    line: int
    attributes: List[str] = Field(default_factory=list)
    body: str = ""

    model_config = ConfigDict(frozen=True, extra="forbid")


class ImportInfo(BaseModel):
    path: str
    file: str
    line: int

    model_config = ConfigDict(frozen=True, extra="forbid")


class CrossReference(BaseModel):
    caller: str
    callee: str
    file: str
    line: int

    model_config = ConfigDict(frozen=True, extra="forbid")


class ParsedFile(BaseModel):
    path: str
    source: str
    functions: List[FunctionInfo] = Field(default_factory=list)
    structs: List[StructInfo] = Field(default_factory=list)
    imports: List[ImportInfo] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True, extra="forbid")


class ParseResult(BaseModel):
    job_id: str
    network: str
    files: List[ParsedFile]
    symbol_table: Dict[str, List[str]] = Field(
        default_factory=dict,
        description="Symbol name -> files that define it",
    )
    cross_references: List[CrossReference] = Field(default_factory=list)
    metadata: ProjectMetadata

    def functions(self) -> List[FunctionInfo]:
        return [fn for parsed in self.files for fn in parsed.functions]

    model_config = ConfigDict(frozen=True, extra="forbid")
