from __future__ import annotations

from typing import Any

BUSINESS_TYPES: dict[str, dict[str, Any]] = {
    "restaurant": {
        "name": "Restaurant/Cafe",
        "keywords": ["food", "service", "taste", "atmosphere", "staff", "chef"],
        "response_style": "warm_hospitality",
        "common_issues": ["slow service", "cold food", "noise", "prices"],
        "positive_aspects": ["taste", "portions", "ambience", "friendly staff"],
    },
    "hotel": {
        "name": "Hotel/Accommodation",
        "keywords": ["room", "cleanliness", "staff", "services", "location"],
        "response_style": "professional_hospitality",
        "common_issues": ["dirty room", "noise", "wifi", "air conditioning"],
        "positive_aspects": ["cleanliness", "location", "staff", "facilities"],
    },
    "medical": {
        "name": "Medical Services",
        "keywords": ["doctor", "treatment", "staff", "appointment", "diagnosis"],
        "response_style": "professional_caring",
        "common_issues": ["waiting time", "communication", "appointments"],
        "positive_aspects": ["professionalism", "care", "results", "explanations"],
    },
    "retail": {
        "name": "Retail/Store",
        "keywords": ["products", "staff", "prices", "quality", "availability"],
        "response_style": "helpful_professional",
        "common_issues": ["out of stock", "queues", "returns", "prices"],
        "positive_aspects": ["variety", "quality", "prices", "helpful staff"],
    },
    "beauty": {
        "name": "Salon/Beauty",
        "keywords": ["services", "staff", "result", "appointment", "prices"],
        "response_style": "personal_caring",
        "common_issues": ["unsatisfying result", "delays", "appointments"],
        "positive_aspects": ["result", "professionalism", "ambience", "experience"],
    },
    "automotive": {
        "name": "Auto Service",
        "keywords": ["repair", "staff", "prices", "time", "quality"],
        "response_style": "technical_professional",
        "common_issues": ["high prices", "long wait", "unclear explanations"],
        "positive_aspects": ["speed", "quality", "staff", "fair prices"],
    },
}

BRAND_VOICES = ("formal", "casual", "friendly", "professional", "luxury")
RESPONSE_LENGTHS = ("short", "medium", "long")

DEFAULT_TEMPLATES: dict[str, dict[str, str]] = {
    "positive_grateful": {
        "name": "Positive - Grateful",
        "category": "positive",
        "template": (
            "Thank you so much for the kind words and for choosing {businessName}! We are delighted "
            "to hear that {specificMention}. Our team always strives to deliver {positiveAspect} and "
            "to create memorable experiences. We look forward to welcoming you again!"
        ),
    },
    "positive_professional": {
        "name": "Positive - Professional",
        "category": "positive",
        "template": (
            "Thank you for the positive review! Your feedback confirms our commitment to "
            "{positiveAspect}. We are proud that {specificMention} and we keep improving for our "
            "loyal customers. Thank you for choosing {businessName}!"
        ),
    },
    "negative_apologetic": {
        "name": "Negative - Sincere Apology",
        "category": "negative",
        "template": (
            "I am very sorry about the unpleasant experience you had at {businessName}. I understand "
            "your frustration with {specificIssue} and we take this feedback very seriously. "
            "{actionPlan} Please contact us directly at {contactMethod} so we can make this right. "
            "Thank you for your patience and for giving us the chance to improve."
        ),
    },
    "negative_solution_focused": {
        "name": "Negative - Concrete Solutions",
        "category": "negative",
        "template": (
            "Thank you for your feedback and we are sorry we did not meet your expectations. "
            "Regarding {specificIssue}, we have already taken the following steps: {solutionSteps}. "
            "We invite you to give us another chance and see the improvements for yourself. "
            "Reach us at {contactMethod} for more details."
        ),
    },
    "neutral_engaging": {
        "name": "Neutral - Engaging",
        "category": "neutral",
        "template": (
            "Thank you for taking the time to review our services! Your feedback helps us better "
            "understand our customers' experience. {specificResponse} We are always open to "
            "suggestions and encourage you to contact us at {contactMethod} with any questions or "
            "recommendations."
        ),
    },
}


def business_type_catalog() -> list[dict[str, Any]]:
    return [
        {
            "id": key,
            "name": info["name"],
            "keywords": info["keywords"],
            "commonIssues": info["common_issues"],
            "positiveAspects": info["positive_aspects"],
        }
        for key, info in BUSINESS_TYPES.items()
    ]


def default_templates(category: str | None = None) -> list[dict[str, Any]]:
    templates = [{"id": key, **template, "isDefault": True} for key, template in DEFAULT_TEMPLATES.items()]
    if category and category != "all":
        templates = [template for template in templates if template["category"] == category]
    return templates


def profile_response(profile: dict[str, Any]) -> dict[str, Any]:
    payload = dict(profile)
    payload["custom_keywords"] = list(payload.get("custom_keywords") or [])
    payload["business_type_info"] = BUSINESS_TYPES.get(payload.get("business_type", ""))
    return payload
