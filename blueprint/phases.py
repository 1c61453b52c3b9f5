# Default 12-phase questionnaire, seeded into phase_templates when empty.
DEFAULT_PHASES = [
    (1, "Product Abstraction & Vision",
     "Define the core product metaphor and primitives that will guide all development"),
    (2, "Core Product Assumptions (CPA Layer)",
     "Document assumptions about growth, compliance, uptime, and customer expectations"),
    (3, "Audience & Customer Development",
     "Define ideal customer profile and validate problem-solution fit"),
    (4, "MVP, V1.5 & Roadmap",
     "Prioritize features and define what ships when"),
    (5, "User Flows & Onboarding",
     "Map the journey from awareness to activation"),
    (6, "UI/UX & Branding",
     "Define design system and accessibility standards"),
    (7, "Tech Stack & Infrastructure",
     "Select technologies for maintainability and growth"),
    (8, "Database Design & Multi-Tenancy",
     "Design schema and choose tenancy model"),
    (9, "Feedback Injection Loops",
     "Establish continuous product feedback systems"),
    (10, "Pricing & Monetisation UX",
     "Define pricing strategy and upgrade flows"),
    (11, "Launch Readiness & Analytics",
     "Ensure infrastructure, monitoring, and compliance"),
    (12, "GTM & AI Integration",
     "Plan go-to-market and AI-powered features"),
]
