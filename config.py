"""Application configuration for the cloud certification exam practice backend."""
import os

from dotenv import load_dotenv

load_dotenv()

BASE_DIR = os.path.dirname(os.path.abspath(__file__))

# Paths
QUESTION_BANKS_DIR = os.environ.get(
    "EXAM_QUESTION_BANKS_DIR", os.path.join(BASE_DIR, "question_banks")
)
DATABASE_PATH = os.environ.get(
    "EXAM_DATABASE_PATH", os.path.join(BASE_DIR, "data", "exam_practice.db")
)

# Logging
LOG_LEVEL = os.environ.get("EXAM_LOG_LEVEL", "INFO")
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# Scaled scoring: 70% raw maps to the floor, 100% raw maps to the ceiling
SCORE_SCALE_MIN = 100
SCORE_SCALE_MAX = 1000
SCALE_ANCHOR_PERCENT = 70
DEFAULT_PASSING_SCORE = 700

# Exam assembly defaults
PRACTICE_TIME_LIMIT = 60  # minutes
PRACTICE_QUESTION_COUNT = 10
CUSTOM_MINUTES_PER_QUESTION = 2
CUSTOM_TIME_LIMIT_MIN = 60
CUSTOM_TIME_LIMIT_MAX = 300

# Certification catalog. Passing scores differ per certification
# (Cloud Practitioner 700, Solutions Architect 720).
CERTIFICATIONS = {
    "CLF-C01": {
        "name": "AWS Certified Cloud Practitioner",
        "total_questions": 65,
        "time_limit": 90,
        "passing_score": 700,
        "domains": [
            {"name": "Cloud Concepts", "percentage": 26},
            {"name": "Security and Compliance", "percentage": 25},
            {"name": "Technology", "percentage": 33},
            {"name": "Billing and Pricing", "percentage": 16},
        ],
    },
    "SAA-C03": {
        "name": "AWS Certified Solutions Architect - Associate",
        "total_questions": 65,
        "time_limit": 130,
        "passing_score": 720,
        "domains": [
            {"name": "Design Secure Architectures", "percentage": 30},
            {"name": "Design Resilient Architectures", "percentage": 26},
            {"name": "Design High-Performing Architectures", "percentage": 24},
            {"name": "Design Cost-Optimized Architectures", "percentage": 20},
        ],
    },
}

# Older bank files use these names
LEGACY_QUESTION_TYPES = {
    "multiple_choice": "SINGLE_ANSWER",
    "multiple_select": "MULTI_ANSWER",
}


def passing_score_for(certification):
    """Return the scaled passing score configured for a certification."""
    info = CERTIFICATIONS.get(certification, {})
    return info.get("passing_score", DEFAULT_PASSING_SCORE)
