"""
Extraction prompts for listing and detail pages.
"""

from opportunity_crawler.core.prompt_builder import LLMPromptBuilder

LISTING_REQUIRED_FIELDS = ["opportunity_listings"]
LISTING_ENTRY_REQUIRED_FIELDS = ["opportunity_id"]
DETAILS_REQUIRED_FIELDS = ["title"]

LISTING_RESPONSE_FORMAT = """
Return the following JSON structure:
{
  "total_opportunities": number,
  "opportunity_listings": [
    {
      "opportunity_id": "string",  // URL slug or unique identifier from the opportunity link
      "link": "string",  // Full opportunity link or relative path
      "title": "string",
      "opportunity_type": "string",  // scholarship, fellowship, internship, job, etc.
      "organization": "string | null",
      "locations": ["string"],
      "date_posted": "string | null",
      "short_description": "string | null",
      "deadline": "string | null",  // Application deadline if mentioned
      "eligibility": ["string"] | null
    }
  ]
}
"""

DETAILS_RESPONSE_FORMAT = """
Return the following JSON structure:
{
  "title": "string",
  "organization": "string",
  "description": "string",  // Full description of the opportunity
  "requirements": ["string"],
  "benefits": ["string"],
  "compensation": "string | null",
  "compensationType": "string | null",  // stipend, salary, etc.
  "locations": ["string"],
  "deadline": "string | null",
  "eligibility": ["string"],
  "applicationUrl": "string | null",
  "contactEmail": "string | null",
  "duration": "string | null",
  "opportunityType": "string | null",
  "experienceLevel": "string | null",
  "isRemote": boolean | null
}
"""


def listing_prompt(markdown: str) -> str:
    return (
        LLMPromptBuilder()
        .add_instruction(
            "You are a smart extraction agent. Given an opportunity listing page's content "
            "(converted from HTML to Markdown), extract only valid metadata for opportunities "
            "explicitly present in the content. Do not guess or hallucinate missing information."
        )
        .add_plain_text("Here is the provided markdown:")
        .add_custom_block("opportunity_markdown_content", markdown)
        .add_rule("opportunity_id: Extract from the URL slug or ID in the opportunity link.")
        .add_rule("Do not guess. If a field like deadline is not explicitly in the text, set it to null.")
        .add_rule("total_opportunities: If the total number of opportunities is clearly stated, extract it as a number.")
        .add_rule("Parse accurately. Be strict and do not fabricate values.")
        .add_rule("opportunity_type: Can be scholarship, fellowship, internship, job, grant, etc.")
        .add_rule("eligibility: Extract any eligibility criteria mentioned.")
        .add_custom_block("response_format", LISTING_RESPONSE_FORMAT)
        .compose()
    )


def details_prompt(markdown: str) -> str:
    return (
        LLMPromptBuilder()
        .add_instruction(
            "You are a smart extraction agent. Given an opportunity's full content (converted from "
            "HTML to Markdown), extract structured metadata in JSON format. Only extract information "
            "that is explicitly stated in the content. Do not guess or hallucinate missing details."
        )
        .add_plain_text("Here is the provided markdown:")
        .add_custom_block("opportunity_markdown_content", markdown)
        .add_rule(
            "All values must be pulled directly from the text. If something is not clearly mentioned, "
            "return null (for nullable fields) or an empty array (for list-type fields)."
        )
        .add_rule('"opportunityType" can be scholarship, fellowship, internship, job, grant, etc.')
        .add_rule("Do not format output as markdown. Return clean, plain JSON only.")
        .add_rule("Do not infer values. Only extract what is actually present in the opportunity listing.")
        .add_rule("Extract eligibility criteria from sections that describe who can apply.")
        .add_rule("Extract requirements from sections that describe what applicants need.")
        .add_rule('"isRemote" should be true only if the opportunity mentions remote work or virtual participation.')
        .add_rule('"experienceLevel" should identify the target experience level: entry-level, mid-level, senior, etc.')
        .add_custom_block("response_format", DETAILS_RESPONSE_FORMAT)
        .compose()
    )
