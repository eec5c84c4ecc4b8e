"""Domain reference material injected into prompts when a question needs it."""
from typing import Dict, List

QUESTION_REFERENCES: Dict[str, Dict] = {
    "eucharist": {
        "question_id": 436,
        "text": "The Eucharist we receive at Mass is truly the Body and Blood of Jesus Christ.",
        "answers": {
            1538: "I believe this",
            1539: "I know the Church teaches this, but I struggle to believe it",
            1540: "I know the Church teaches this, but I do not believe it",
            1542: "I did not know the Church teaches this",
            1927: "Blank",
        },
    },
    "mass_attendance": {
        "question_id": 7111,
        "text": "I attend Mass",
        "answers": {
            1927: "Blank",
            29861: "Weekly or more often",
            29871: "Sometimes",
            29881: "Only at school",
            29891: "No",
        },
    },
    "baptism": {
        "question_id": 7121,
        "text": "I have been baptized",
        "answers": {
            1927: "Blank",
            29901: "Yes",
            29911: "No",
            29921: "Not sure",
        },
    },
}

NULL_HANDLING_PATTERNS: Dict[str, str] = {
    "numeric": "COALESCE(column_name, 0)",
    "text": "COALESCE(column_name, '')",
    "date": "COALESCE(column_name, CURRENT_DATE)",
    "boolean": "COALESCE(column_name, false)",
    "division": "NULLIF(denominator, 0)",
}

TABLE_RELATIONSHIPS: Dict[str, Dict[str, str]] = {
    "core": {
        "testing_section_students": "testing results for all users - MUST filter by user role",
        "testing_sections": "testing sections of a school",
        "testing_centers": "schools",
        "subject_areas": "subject categorization",
    },
    "user": {
        "users": "user information",
        "user_answers": "user responses to questions",
        "questions": "question content and context",
    },
    "organizational": {
        "dioceses": "diocese information",
        "school_classes": "class information",
        "academic_years": "academic year context",
        "domains": "domain categorization",
        "ark_admin_dashes": "admin dashboard data",
    },
}

ROLE_TYPES: Dict[str, int] = {"teachers": 5, "students": 7}

SCORE_FORMULA = (
    "WHERE knowledge_score IS NOT NULL AND knowledge_total IS NOT NULL "
    "AND knowledge_total > 0 AND knowledge_score > 0 "
    "AND (COALESCE(knowledge_score::float, 0) / NULLIF(COALESCE(knowledge_total::float, 0), 0)) * 100"
)
SCORE_RATIO_EXPRESSION = "(COALESCE(knowledge_score::float, 0) / NULLIF(COALESCE(knowledge_total::float, 0), 0)) * 100"
COMMON_SUBJECTS: List[str] = ["Math", "Reading", "Theology"]

_QUERY_TYPE_KEYWORDS = {
    "question_analysis": ("eucharist", "mass", "baptism", "baptized", "believe"),
    "score_calculation": ("score", "average", "calculation", "percent"),
    "null_handling": ("null", "coalesce", "nullif", "missing", "blank"),
}


def determine_query_types(question: str) -> List[str]:
    """Reference sections worth including for ``question``. Table relationships are always included."""
    lowered = (question or "").lower()
    types = [name for name, keywords in _QUERY_TYPE_KEYWORDS.items() if any(k in lowered for k in keywords)]
    types.append("table_relationships")
    return types


def get_reference_section(query_types: List[str]) -> str:
    sections: List[str] = []
    if "question_analysis" in query_types:
        lines = ["**Question References:**"]
        for key, ref in QUESTION_REFERENCES.items():
            answers = ", ".join(f"{answer_id} = '{label}'" for answer_id, label in ref["answers"].items())
            lines.append(f"- {key}: question_id = {ref['question_id']} (\"{ref['text']}\"); answers: {answers}")
        sections.append("\n".join(lines))
    if "score_calculation" in query_types:
        sections.append(
            "**Score Calculation:**\n"
            f"- Formula: {SCORE_FORMULA}\n"
            f"- Common Subjects: {', '.join(COMMON_SUBJECTS)}"
        )
    if "null_handling" in query_types:
        lines = ["**NULL Handling Patterns:**"]
        lines.extend(f"- {kind}: {pattern}" for kind, pattern in NULL_HANDLING_PATTERNS.items())
        sections.append("\n".join(lines))
    if "table_relationships" in query_types:
        lines = ["**Table Relationships:**"]
        for group, tables in TABLE_RELATIONSHIPS.items():
            lines.append(f"- {group.capitalize()} tables:")
            lines.extend(f"  - {table}: {description}" for table, description in tables.items())
        lines.append(f"- Role ids: teachers = {ROLE_TYPES['teachers']}, students = {ROLE_TYPES['students']}")
        sections.append("\n".join(lines))
    return "\n\n".join(sections)
