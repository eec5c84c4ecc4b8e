"""Turns catalog objects and curated documentation into embeddable entries."""
import re
from typing import Iterable, List, Optional, Sequence, Union

from arksql.schemas.documents import DocumentationEntry, SchemaVectorEntry
from arksql.schemas.schema import ForeignKeyConstraint, SchemaTable

# Business vocabulary that users reach for when they mean these tables
TABLE_DESCRIPTIONS = {
    "subject_areas": "Subject areas and categories for assessments. Related terms: subjects, topics, categories, areas of study, math, reading, theology.",
    "testing_centers": "Schools and testing locations. Related terms: schools, testing centers, locations, campuses, parishes.",
    "dioceses": "Dioceses that own schools. Related terms: diocese, archdiocese, region, district, bishop.",
    "domains": "Knowledge domains used to categorize questions. Related terms: domains, knowledge areas, competencies.",
    "testing_sections": "Testing sections (classes taking an assessment) within a school. Related terms: sections, classes, groups, sessions.",
    "ark_admin_dashes": "Administrative dashboard snapshots. Related terms: admin dashboard, overview, summary statistics.",
    "school_classes": "School classes and grade levels. Related terms: classes, grades, grade levels, homerooms.",
    "testing_section_students": "Testing results for every participant in a section (students and teachers). Related terms: results, scores, test takers, participants, knowledge score.",
    "testing_center_dashboards": "Per-school dashboard aggregates. Related terms: school dashboard, school summary, school statistics.",
    "tc_grade_levels_snapshot_dcqs": "Per-school grade-level snapshot of diocesan custom question results. Related terms: grade snapshot, custom questions, dcq.",
    "tc_grade_levels_snapshots": "Per-school grade-level score snapshots. Related terms: grade level results, yearly snapshot, averages by grade.",
    "diocese_student_snapshot_dcqs": "Diocese-wide student snapshot of custom question results. Related terms: diocese custom questions, dcq summary.",
    "diocese_student_snapshot_grade_levels": "Diocese-wide student results by grade level. Related terms: diocese grade averages, grade comparison.",
}

_QUOTED_NAME = re.compile(r"'([^']+)'")


def document_category(text: str) -> str:
    """Category label prepended to free-text documentation before embedding."""
    lowered = text.lower()
    if "table" in lowered and "attributes" in lowered and "key attributes include" in lowered:
        match = _QUOTED_NAME.search(text)
        return f"[Table Documentation - {match.group(1) if match else 'unknown table'}]"
    if "hierarchy" in lowered and "->" in lowered:
        return "[Query Pattern]"
    if "filtering" in lowered:
        return "[Filtering Rule]"
    if "score" in lowered:
        return "[Score Calculation]"
    if "diocese" in lowered:
        return "[Diocese Information]"
    if "user role" in lowered or "role =" in lowered or "role id" in lowered:
        return "[User Roles]"
    if "academic_year" in lowered:
        return "[Academic Year]"
    return "[General Documentation]"


def table_entry(table: SchemaTable) -> SchemaVectorEntry:
    columns = ", ".join(f"{c.name} ({c.data_type})" for c in table.columns)
    parts = [f"Table: {table.table_name}", f"Schema: {table.schema_name}"]
    description = TABLE_DESCRIPTIONS.get(table.table_name)
    if description:
        parts.append(f"Description: {description}")
    parts.append(f"Columns: {columns}")
    if table.access:
        if table.access.requires_tenant_filter:
            parts.append("Access: protected, must be filtered by diocese")
        parts.append(f"Join path: {table.access.join_path_to_tenant}")
    return SchemaVectorEntry(
        id=f"table_{table.schema_name}_{table.table_name}",
        content="\n".join(parts),
        type="table",
        table_name=table.table_name,
        metadata={
            "schema": table.schema_name,
            "column_count": len(table.columns),
            "requires_tenant_filter": bool(table.access and table.access.requires_tenant_filter),
        },
        title=table.table_name,
    )


def column_entries(table: SchemaTable) -> List[SchemaVectorEntry]:
    entries = []
    for column in table.columns:
        nullable = "nullable" if column.is_nullable else "not null"
        entries.append(SchemaVectorEntry(
            id=f"column_{table.schema_name}_{table.table_name}_{column.name}",
            content=f"Column: {column.name} in table {table.table_name}. Type: {column.data_type}, {nullable}.",
            type="column",
            table_name=table.table_name,
            column_name=column.name,
            metadata={"data_type": column.data_type, "is_nullable": column.is_nullable},
            title=f"{table.table_name}.{column.name}",
        ))
    return entries


def relation_entry(fk: ForeignKeyConstraint) -> SchemaVectorEntry:
    return SchemaVectorEntry(
        id=f"relation_{fk.constraint_name}",
        content=(
            f"Relationship: {fk.table_name}.{fk.column_name} references "
            f"{fk.foreign_table_name}.{fk.foreign_column_name}. "
            f"Join {fk.table_name} to {fk.foreign_table_name} ON {fk.table_name}.{fk.column_name} = {fk.foreign_table_name}.{fk.foreign_column_name}."
        ),
        type="relation",
        table_name=fk.table_name,
        column_name=fk.column_name,
        metadata={
            "foreign_table": fk.foreign_table_name,
            "foreign_column": fk.foreign_column_name,
        },
        title=fk.constraint_name,
    )


def documentation_entry(entry: DocumentationEntry) -> SchemaVectorEntry:
    meta = entry.metadata
    parts = []
    if entry.title:
        parts.append(entry.title)
    if meta.question_template:
        parts.append(f"Question: {meta.question_template}")
    if meta.question_variants:
        parts.append("Also asked as: " + "; ".join(meta.question_variants))
    if meta.common_phrasings:
        parts.append("Common phrasings: " + "; ".join(meta.common_phrasings))
    if meta.keywords:
        parts.append("Keywords: " + ", ".join(meta.keywords))
    if meta.tables:
        parts.append("Tables: " + ", ".join(meta.tables))
    parts.append(entry.content)
    return SchemaVectorEntry(
        id=entry.store_id,
        content="\n".join(parts),
        type="documentation" if entry.kind == "template" else "rule",
        metadata=meta.model_dump(exclude_none=True),
        title=entry.title or None,
    )


def free_text_entry(text: str, index: int) -> SchemaVectorEntry:
    return SchemaVectorEntry(
        id=f"documentation_{index}",
        content=f"Documentation: {document_category(text)} {text}",
        type="documentation",
        metadata={"doc_index": index},
    )


def build_entries(
    tables: Sequence[SchemaTable],
    foreign_keys: Sequence[ForeignKeyConstraint],
    documentation: Optional[Iterable[Union[DocumentationEntry, str]]] = None,
) -> List[SchemaVectorEntry]:
    """One entry per table, column, relation and documentation item, in that order."""
    entries: List[SchemaVectorEntry] = []
    for table in tables:
        entries.append(table_entry(table))
        entries.extend(column_entries(table))
    entries.extend(relation_entry(fk) for fk in foreign_keys)
    for index, item in enumerate(documentation or []):
        if isinstance(item, DocumentationEntry):
            entries.append(documentation_entry(item))
        else:
            entries.append(free_text_entry(str(item), index))
    return entries
