"""
Prompt text for the analysis stages.

Kept apart from the request builders so wording can change without touching
dispatch. Every stage asks for a single JSON object.
"""

from __future__ import annotations

BASE_SYSTEM = """You are a case documentation analyst. You produce objective, evidence-cited \
documentation of written communication between people in a family conflict.

You do not give therapy, legal advice, custody recommendations or diagnoses.

Objectivity means evidence-based attribution, not artificial neutrality. When a \
participant blocks resolution (refusing direct questions, contradicting documented \
guidance, deflecting, violating agreements), document it and attribute it to that \
person with evidence.

For every material conclusion state who did it (personId), what they did, the \
evidence (quote or message reference), the verification status where relevant \
(supported, contradicted, ambiguous) and the functional impact.

Always respond with a single valid JSON object."""

CONVERSATION_MAP_TASK = (
    "Create a conversation map: main topics, key asks and questions, decisions "
    "made, and the overall tone."
)
CONVERSATION_MAP_SCHEMA = """{
  "summary": "2-3 paragraph case synopsis",
  "overallTone": "cooperative" | "neutral" | "tense" | "contentious" | "hostile",
  "keyTopics": ["..."],
  "keyAsks": ["question or request, with who asked"],
  "decisionsOrCommitments": ["..."]
}"""

CLAIMS_TASK = (
    "Build a claims ledger verifying the most consequential claims about "
    "professional guidance, agreements, facts, accusations and commitments."
)
CLAIMS_SCHEMA = """{
  "claimsLedger": [
    {
      "claimText": "string",
      "speakerPersonId": "person id",
      "category": "professional_guidance" | "agreement" | "factual" | "accusation" | "commitment" | "process",
      "evidence": "quote or message reference",
      "verificationStatus": "supported" | "contradicted" | "ambiguous",
      "notes": "why"
    }
  ]
}"""

ISSUE_ACTION_SCHEMA = """{
  "issueActions": [
    {
      "action": "%(action)s",%(issue_id)s
      "title": "string",
      "description": "string",
      "priority": "low" | "medium" | "high",
      "status": "open" | "monitoring",
      "linkedMessageIds": ["message ids"],
      "personContributions": [
        {
          "personId": "person id",
          "contributionType": "primary_contributor" | "affected_party" | "secondary_contributor" | "resolver" | "enabler" | "involved",
          "contributionDescription": "2-3 sentences with evidence",
          "contributionValence": "positive" | "negative" | "neutral" | "mixed"
        }
      ],
      "reasoning": "string"
    }
  ]
}"""

ISSUE_LINKING_TASK = (
    "Evaluate every existing issue for relevance to this conversation and create "
    "an update action for each relevant one. A conversation is relevant when it "
    "discusses the same topic, adds evidence or context, or shows related behavior."
)
ISSUE_LINKING_SCHEMA = ISSUE_ACTION_SCHEMA % {
    "action": "update",
    "issue_id": '\n      "issueId": "existing issue id",',
}

ISSUE_DETECTION_TASK = (
    "Identify new behavioral issues worth tracking that are distinct from the "
    "existing issues already linked: resolution-blocking behavior, safety "
    "concerns, agreement or guidance violations."
)
ISSUE_DETECTION_SCHEMA = ISSUE_ACTION_SCHEMA % {"action": "create", "issue_id": ""}

AGREEMENT_TASK = (
    "Check messages against the active agreements, and identify new mutual "
    "agreements (clear consent from both sides, not proposals)."
)
AGREEMENT_SCHEMA = """{
  "agreementViolations": [
    {
      "agreementItemId": "agreement id",
      "violationType": "direct" | "potential" | "pattern",
      "description": "string",
      "messageIds": ["message ids"],
      "severity": "minor" | "moderate" | "severe"
    }
  ],
  "detectedAgreements": [
    {
      "topic": "string",
      "summary": "string",
      "fullText": "quotes showing mutual consent",
      "messageIds": ["message ids"],
      "isTemporary": true | false,
      "conditionText": "string or null",
      "potentialOverrideTopics": ["existing agreement topics"],
      "confidence": "high" | "medium" | "low",
      "reasoning": "string"
    }
  ]
}"""

PERSON_TASK = (
    "Create a behavioral communication profile for each participant. Document "
    "observable behavior and its functional impact only."
)
PERSON_SCHEMA = """{
  "personAnalyses": [
    {
      "personId": "person id",
      "behavioralAssessment": {
        "summary": "string",
        "cooperationLevel": "high" | "moderate" | "low" | "obstructive",
        "flexibilityLevel": "high" | "moderate" | "low" | "rigid",
        "responsivenessLevel": "high" | "moderate" | "low" | "avoidant",
        "accountabilityLevel": "high" | "moderate" | "low" | "deflecting",
        "boundaryRespect": "appropriate" | "moderate" | "poor"
      },
      "notablePatterns": {"positive": ["..."], "concerning": ["..."]},
      "interactionRecommendations": ["..."],
      "concerns": [
        {"type": "string", "description": "string", "evidence": ["..."], "severity": "low" | "medium" | "high"}
      ]
    }
  ]
}"""

ANNOTATION_TASK = """Flag messages containing noteworthy behavior. Every flag needs \
attributedToPersonId and evidence.

Flag types:
- Tier 1: misrepresenting_guidance, guidance_downshift, professional_recommendation_ignored, agreement_violation, safety_concern
- Tier 2: process_gating, channel_shift_request, communication_stonewalling, selective_response, deflection_tactic, accountability_avoidance, unilateral_decision, documentation_resistance
- Tier 3: concerning_language, boundary_violation, false_equivalence, context_shifting, manipulation_tactic, scheduling_obstruction, financial_non_compliance
- Tier 4 (positive): positive_cooperation, constructive_problem_solving, repair_attempt, appropriate_flexibility"""
ANNOTATION_SCHEMA = """{
  "messageAnnotations": [
    {
      "messageId": "message id",
      "flags": [
        {
          "type": "flag type",
          "description": "string",
          "attributedToPersonId": "person id",
          "severity": "low" | "medium" | "high",
          "evidence": "quote or reference",
          "impact": "string"
        }
      ]
    }
  ]
}"""

SYNTHESIS_TASK = (
    "Synthesize the analysis: decide the conversation state, give the strongest "
    "alternative interpretation for each negative finding, list missing context "
    "that could change conclusions, and choose topic categories."
)
SYNTHESIS_SCHEMA = """{
  "conversationState": {
    "status": "open" | "resolved",
    "pendingResponderName": "name or null",
    "reasoning": "string",
    "pendingActionSummary": "string"
  },
  "alternativeInterpretations": [
    {"findingDescription": "string", "alternativeExplanation": "string"}
  ],
  "missingContext": [
    {"description": "string", "howItCouldChangeConclusions": "string"}
  ],
  "topicCategorySlugs": ["1-5 of: decision_making, parenting_time, holiday_schedule, school, communication, financial, travel, right_of_first_refusal, exchange, medical, extracurricular, technology, third_party, dispute_resolution, modification, other"]
}"""
