DEFAULT_TOPIC = "New Conversation"

UNAUTHORIZED_TEXT = "Unauthorized access, please enter access code in settings page."

ERROR_TEXT = "Something went wrong, please try again later."

KNOWLEDGE_LABEL = "Retrieved source: "


class Prompts:
    greeting = "Hello! How can I assist you today?"

    recap = (
        "This is a summary of the chat history between the AI and the user as a recap: "
        "{summary}"
    )

    topic = (
        "Please generate a four to five word title summarizing our conversation "
        "without any lead-in, punctuation, quotation marks, periods, symbols, or "
        "additional text. Remove enclosing quotation marks."
    )

    summarize = (
        "Summarize our discussion briefly in 200 words or less to use as a prompt "
        "for future context."
    )

    snippet_summary = (
        "Summarize the following text into 100 words, making it easy to read and "
        "comprehend. The summary should be concise, clear, and capture the main "
        "points of the text. Avoid using complex sentence structures or technical "
        "jargon."
    )

    persona = """You are a knowledgeable assistant answering questions from a curated reference library.
Each question comes with reference material retrieved from that library.
Answer in detail using the provided material. If the material does not contain
the relevant information, say that you don't know.
"""

    retrieval_instruction = """Please answer the questions and explain in detail strictly based on the following information.
Ignore outlier search results which have nothing to do with the question.
The reference materials are provided within triple backticks (```).
For questions that are not related to the reference materials, say that the question is not covered and ask for a related question.
"""

    def recap_for(self, summary: str) -> str:
        return self.recap.format(summary=summary)
