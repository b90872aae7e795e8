"""
Command-line entry point: routes one prompt through the dispatcher
(direct answer or web agent) and prints the final answer.

Usage: python run_agent.py "find wireless earbuds under $50 on amazon.com"
"""

import sys

from agent_hub.core.orchestrator import build_dispatcher, print_summary, run

DEFAULT_PROMPT = "Get the top 5 stories from news.ycombinator.com"


def main():
    user_prompt = " ".join(sys.argv[1:]).strip() or DEFAULT_PROMPT
    dispatcher = build_dispatcher()
    result = run(user_prompt, dispatcher)
    print_summary(user_prompt, result, dispatcher)


if __name__ == "__main__":
    main()
