"""
Enrichment domain constants.

Tool names and payload conventions of the identity tool service, the default
profile domains used for gap-fill fetches, and the field exclusions applied by
the ICP analyzer.
"""
import re

# Tool service tool names
RESOLVE_TOOL = "resolve_identities"
PROFILE_TOOL = "get_person"
LIST_CLUSTERS_TOOL = "list_clusters"
FIND_PERSONS_TOOL = "find_persons"

# Business errors come back inside a successful response, prefixed with this marker
TOOL_ERROR_MARKER = "MCP error"

# Identifier kinds in lookup precedence order (phone wins over email over address)
IDENTIFIER_KINDS = ("phone", "email", "address")

# Profile domain key carrying the canonical person id
PROFILE_PERSON_ID_KEY = "t0.person_id"

# Domains requested when the reconciler fetches profiles on its own
DEFAULT_PROFILE_DOMAINS = [
    "name",
    "demographic",
    "email",
    "phone",
    "address",
    "employment",
    "interest",
    "lifestyle",
]

# Keys under which a profile result may point at a bulk export instead of inline profiles
EXPORT_LINK_KEYS = ("export_url", "export_urls", "download_url", "download_urls", "exportLinks", "export_links")

# Columns whose presence means the uploaded rows were already enriched once
ENRICHED_MARKER_COLUMNS = ("person_id", "first_name", PROFILE_PERSON_ID_KEY)

# ==========================================================================
# ICP ANALYSIS
# ==========================================================================

# Minimum share of profiles, in whole percent
ICP_MIN_PERCENT = 5
ICP_MAX_POSITIVE = 20
ICP_MAX_NEGATIVE = 15
ICP_MAX_TOTAL = 35
ICP_PRESELECT_COUNT = 5
ICP_MAX_VALUE_LENGTH = 100

ICP_EXCLUDED_FIELDS = {
    "person_id",
    "id",
    "email",
    "email_address",
    "phone",
    "phone_number",
    "mobile",
    "address",
    "street",
    "city",
    "state",
    "zip",
    "zip_code",
    "postal_code",
    "name",
    "first_name",
    "last_name",
    "middle_name",
    "full_name",
    "overall_quality_score",
    "quality_score",
    "match_status",
    "status",
    "enrichment_error",
}

ICP_EXCLUDED_PATTERNS = [
    re.compile(r"email", re.IGNORECASE),
    re.compile(r"phone|mobile|cell", re.IGNORECASE),
    re.compile(r"address|street|zip|postal", re.IGNORECASE),
    re.compile(r"(^|_)(first|last|middle|full)?_?name($|_)", re.IGNORECASE),
    re.compile(r"^t\d+\."),
    re.compile(r"_cluster_id$"),
    re.compile(r"person_?id", re.IGNORECASE),
]

ICP_NULL_LIKE_VALUES = {"", "null", "none", "undefined", "nan", "n/a", "[object object]"}
