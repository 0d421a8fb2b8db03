import re
from dataclasses import dataclass

DEFAULT_TEMPLATE_ID = "internal"
NOT_DISCUSSED = "Not discussed in meeting."
KEYWORD_WIN_THRESHOLD = 5


@dataclass(frozen=True)
class TemplateSection:
    id: str
    title: str
    prompt: str
    required: bool = True


@dataclass(frozen=True)
class MemoTemplate:
    id: str
    name: str
    description: str
    system_prompt: str
    detection_keywords: tuple[str, ...]
    sections: tuple[TemplateSection, ...]

    @property
    def display_name(self) -> str:
        return " ".join(part.capitalize() for part in self.id.split("-"))


MEMO_TEMPLATES: tuple[MemoTemplate, ...] = (
    MemoTemplate(
        id="founder-pitch",
        name="Founder Pitch",
        description="For startup pitch meetings and fundraising conversations",
        system_prompt=(
            "You are an expert VC analyst generating an investment memo from a founder pitch "
            "meeting. Focus on extractable investment-relevant information. Be analytical and "
            "objective. Highlight both opportunities and risks. Use bullet points for clarity."
        ),
        detection_keywords=(
            "pitch", "fundraising", "seed", "series", "deck", "invest", "raise",
            "valuation", "cap table", "runway", "traction", "mrr", "arr", "growth",
            "founder", "co-founder", "startup", "venture",
        ),
        sections=(
            TemplateSection(
                "company",
                "Company Overview",
                "What the company does, the problem and why now, target market, business "
                "model and current stage.",
            ),
            TemplateSection(
                "team",
                "Team",
                "Founders and backgrounds, relevant experience, team size, key hires, advisors "
                "and any team gaps.",
            ),
            TemplateSection(
                "traction",
                "Traction & Metrics",
                "Revenue (MRR, ARR, GMV), growth rates, users or customers, unit economics and "
                "milestones, with specific numbers.",
            ),
            TemplateSection(
                "product",
                "Product & Differentiation",
                "Core product, differentiators and moat, technology advantages, competition "
                "and roadmap highlights.",
            ),
            TemplateSection(
                "ask",
                "The Ask",
                "Amount being raised, valuation or terms, use of funds, timeline and current "
                "investors or commitments.",
            ),
            TemplateSection(
                "concerns",
                "Concerns & Risks",
                "Market, execution, team and competitive risks plus any red flags.",
            ),
            TemplateSection(
                "next-steps",
                "Next Steps",
                "Follow-up meetings, diligence items, introductions, materials to review and "
                "decision timeline.",
            ),
        ),
    ),
    MemoTemplate(
        id="customer-call",
        name="Customer Call",
        description="For customer feedback, product demos, and support calls",
        system_prompt=(
            "You are a product manager documenting a customer call. Focus on actionable "
            "feedback, feature requests, and customer sentiment."
        ),
        detection_keywords=(
            "customer", "client", "user", "feedback", "feature request", "bug",
            "support", "demo", "onboarding", "churn", "renewal", "upsell",
            "product feedback", "pain point", "workflow",
        ),
        sections=(
            TemplateSection(
                "customer-context",
                "Customer Context",
                "Company name and size, roles on the call, tenure as a customer, use case and "
                "current plan.",
            ),
            TemplateSection(
                "feedback",
                "Product Feedback",
                "What works well, pain points, features mentioned, competitor comparisons and "
                "workflow issues.",
            ),
            TemplateSection(
                "feature-requests",
                "Feature Requests",
                "Each requested feature with the reason, urgency and current workaround, as a "
                "numbered list.",
            ),
            TemplateSection(
                "sentiment",
                "Customer Sentiment",
                "Satisfaction level, churn risk indicators, expansion opportunities and "
                "relationship health.",
            ),
            TemplateSection(
                "action-items",
                "Action Items",
                "Commitments on both sides, follow-ups and escalations with owners and "
                "timelines.",
            ),
        ),
    ),
    MemoTemplate(
        id="portfolio-update",
        name="Portfolio Update",
        description="For check-ins with portfolio companies",
        system_prompt=(
            "You are a VC tracking portfolio company progress. Focus on key metrics, "
            "challenges, and where support is needed."
        ),
        detection_keywords=(
            "portfolio", "update", "board", "quarterly", "monthly", "progress",
            "kpis", "metrics review", "runway", "hiring", "fundraise", "exit",
        ),
        sections=(
            TemplateSection(
                "metrics-update",
                "Metrics Update",
                "Revenue and growth, engagement, burn and runway, headcount and milestones "
                "compared to targets.",
            ),
            TemplateSection(
                "progress",
                "Progress & Wins",
                "Major wins, launches, customer wins, partnerships and team additions.",
            ),
            TemplateSection(
                "challenges",
                "Challenges",
                "Operational issues, market headwinds, team challenges and competitive "
                "pressure.",
            ),
            TemplateSection(
                "support-needed",
                "Support Needed",
                "Introductions requested, strategic or operational help and fundraising "
                "support.",
            ),
            TemplateSection(
                "outlook",
                "Outlook & Next Period",
                "Goals for the next period, upcoming milestones, fundraising timeline and "
                "pending decisions.",
            ),
        ),
    ),
    MemoTemplate(
        id="recruiting",
        name="Recruiting",
        description="For candidate interviews and recruiting calls",
        system_prompt=(
            "You are a hiring manager documenting a candidate interview. Focus on "
            "qualifications, cultural fit, and hiring decision factors."
        ),
        detection_keywords=(
            "candidate", "interview", "hire", "recruiting", "resume", "experience",
            "role", "position", "offer", "compensation", "background check",
        ),
        sections=(
            TemplateSection(
                "candidate-profile",
                "Candidate Profile",
                "Name, current role, years of experience, education, key skills and "
                "motivation.",
            ),
            TemplateSection(
                "experience",
                "Relevant Experience",
                "Previous roles, achievements, demonstrated skills and domain expertise.",
            ),
            TemplateSection(
                "assessment",
                "Assessment",
                "Skill fit, cultural fit, communication, strengths and concerns.",
            ),
            TemplateSection(
                "logistics",
                "Logistics & Expectations",
                "Compensation expectations, start date, location preferences and other "
                "processes.",
            ),
            TemplateSection(
                "recommendation",
                "Recommendation",
                "Overall recommendation with key reasons and next steps in the process.",
            ),
        ),
    ),
    MemoTemplate(
        id="internal",
        name="Internal Meeting",
        description="For internal team meetings and planning sessions",
        system_prompt=(
            "You are documenting an internal team meeting. Focus on decisions made, action "
            "items, and key discussion points."
        ),
        detection_keywords=(
            "team meeting", "planning", "strategy", "internal", "standup",
            "retrospective", "all-hands", "offsite", "roadmap", "okrs",
        ),
        sections=(
            TemplateSection(
                "attendees",
                "Attendees",
                "Participants, their roles and who led the meeting.",
                required=False,
            ),
            TemplateSection(
                "agenda",
                "Topics Discussed",
                "Agenda items covered with key points and deferred items.",
            ),
            TemplateSection(
                "decisions",
                "Decisions Made",
                "Each decision with its rationale and affected stakeholders.",
            ),
            TemplateSection(
                "action-items",
                "Action Items",
                "Tasks with owner, due date and priority as a clear list.",
            ),
            TemplateSection(
                "follow-up",
                "Follow-Up",
                "Next meeting, items to revisit and stakeholders to inform.",
            ),
        ),
    ),
)

TEMPLATE_MAP: dict[str, MemoTemplate] = {template.id: template for template in MEMO_TEMPLATES}


def get_template(template_id: str | None) -> MemoTemplate:
    return TEMPLATE_MAP.get((template_id or "").strip().lower(), TEMPLATE_MAP[DEFAULT_TEMPLATE_ID])


def score_keywords(transcript: str) -> dict[str, int]:
    normalized_transcript = transcript.lower()
    scores: dict[str, int] = {}
    for template in MEMO_TEMPLATES:
        score = 0
        for keyword in template.detection_keywords:
            pattern = rf"\b{re.escape(keyword)}\b"
            score += len(re.findall(pattern, normalized_transcript))
        scores[template.id] = score
    return scores


def keyword_winner(transcript: str) -> str | None:
    """Return a template id when exactly one template leads with enough keyword hits."""
    scores = score_keywords(transcript)
    max_score = max(scores.values(), default=0)
    if max_score < KEYWORD_WIN_THRESHOLD:
        return None
    leaders = [template_id for template_id, score in scores.items() if score == max_score]
    if len(leaders) != 1:
        return None
    return leaders[0]


def match_template_id(raw_answer: str) -> str | None:
    answer = raw_answer.strip().lower().strip("'\"`. ")
    if answer in TEMPLATE_MAP:
        return answer
    for template in MEMO_TEMPLATES:
        if template.id in answer:
            return template.id
    return None


def missing_required_sections(content: str, template: MemoTemplate) -> list[TemplateSection]:
    return [
        section
        for section in template.sections
        if section.required and f"## {section.title}" not in content
    ]
