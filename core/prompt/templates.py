"""
提示词模板

包含：
- 搜索结果提示词（普通 / Artifacts 两个版本）
- Artifacts 指令
- 搜索查询改写提示词
- 继续生成提示词
"""

from datetime import datetime
from typing import List, Optional

from models.chat import SearchResult

_SEARCH_GUIDELINES = """\
In the search results I provided, each result is in the format [webpage X begin]...[webpage X end], where X represents the numerical index of each article. Please reference the context at the end of sentences where appropriate. Use the citation number [X] format to reference the corresponding parts in your answer. If a sentence is derived from multiple contexts, list all relevant citation numbers, such as [3][5]. Be careful not to concentrate the citation numbers at the end of the response, but rather list them in the corresponding parts of the answer.
When answering, please pay attention to the following points:

- Today is {{CUR_DATE}}
- The language of the answer should be consistent with the language of the user's message, unless the user explicitly indicates a different language for the response.
- Not all content from the search results is closely related to the user's question; you need to discern and filter the search results based on the question.
- For listing questions, try to limit the answer to no more than 10 points and inform the user that they can check the search sources for complete information.
- For creative questions, be sure to cite the corresponding reference numbers in the body of the paragraphs, such as [3][5], and not just at the end of the article.
- If the answer is long, structure it and summarize it in paragraphs. If you need to answer in points, limit it to no more than 5 points and merge related content.
- Your answer should synthesize multiple relevant web pages and not repeat citations from a single web page.
- Use markdown to format paragraphs, lists, tables, and citations as much as possible.
- Enclose all mathematical expressions in LaTeX. Always use double dollar signs $$, for example, $$x^4 = x - 3$$.
- Do not include any URLs, only include citations with numbers, such as [1].
- Do not include references (URLs, sources) at the end.
"""

SEARCH_PROMPT_TEMPLATE = (
    "# The following content is based on the search results from the user's message:\n"
    "{{SEARCH_RESULTS}}\n"
    + _SEARCH_GUIDELINES
    + "\n# The user's message is:\n{{USER_QUERY}}\n"
)

ARTIFACTS_PROMPT = """\
# Artifacts Support
You can create artifacts for substantial, self-contained content that the user is likely to reuse.

Use an artifact for:
- Reports, documents, articles or essays longer than 300 words
- Complete code implementations (full files, scripts, classes longer than 15 lines)
- Structured content such as tables, diagrams (mermaid), SVG graphics or HTML pages

Rules:
- Place the ENTIRE content within the artifact, do not split it between the artifact and your main response
- Give each artifact a clear, descriptive title and one type: markdown, code, html, svg or mermaid
- In your main response, briefly introduce the artifact

Do not use artifacts for simple explanations, short snippets or brief conversational answers.
"""

SEARCH_PROMPT_ARTIFACTS_TEMPLATE = (
    "# The following content is based on the search results from the user's message:\n"
    "{{SEARCH_RESULTS}}\n"
    + _SEARCH_GUIDELINES
    + "- Still include citations [X] when referencing search results within artifacts.\n\n"
    + ARTIFACTS_PROMPT
    + "\n# The user's message is:\n{{USER_QUERY}}\n"
)

SEARCH_REWRITE_PROMPT = """\
你是一个搜索优化专家。基于以下内容，生成一个优化的搜索查询：

当前时间：{current_time}
搜索引擎：{engine_name}

请遵循以下规则重写搜索查询：
1. 根据用户的问题和上下文，重写应该进行搜索的关键词
2. 如果需要使用时间，则根据当前时间给出需要查询的具体时间日期信息
3. 编程相关查询：加上编程语言或框架名称，指定错误代码或具体版本号
4. 保持查询简洁，通常不超过5-6个关键词
5. 保留用户问题的语言：中文问题返回中文，英文问题返回英文，其他语言同理

直接返回优化后的搜索词，不要有任何额外说明。
如下是之前对话的上下文：
<context_messages>
{context}
</context_messages>
如下是用户的问题：
<user_question>
{query}
</user_question>
"""

CONTINUE_PROMPT = (
    "The previous response was paused because it reached the tool call limit. "
    "Continue from where it stopped without repeating what has already been said."
)


def format_search_results(results: List[SearchResult]) -> str:
    """按 [webpage X begin]...[webpage X end] 格式拼接搜索结果"""
    return "\n\n".join(
        f"[webpage {index} begin]\n"
        f"title: {result.title}\n"
        f"URL: {result.url}\n"
        f"content：{result.content or ''}\n"
        f"[webpage {index} end]"
        for index, result in enumerate(results, start=1)
    )


def generate_search_prompt(
    query: str,
    results: List[SearchResult],
    artifacts: bool = False,
    today: Optional[str] = None,
) -> str:
    """
    生成带搜索结果的提示词

    没有搜索结果时直接返回原始查询。
    """
    if not results:
        return query
    template = SEARCH_PROMPT_ARTIFACTS_TEMPLATE if artifacts else SEARCH_PROMPT_TEMPLATE
    return (
        template.replace("{{SEARCH_RESULTS}}", format_search_results(results))
        .replace("{{USER_QUERY}}", query)
        .replace("{{CUR_DATE}}", today or datetime.now().strftime("%Y-%m-%d"))
    )


def build_rewrite_prompt(query: str, context: str, engine_name: str, current_time: Optional[str] = None) -> str:
    return SEARCH_REWRITE_PROMPT.format(
        current_time=current_time or datetime.now().isoformat(timespec="seconds"),
        engine_name=engine_name,
        context=context,
        query=query,
    )
