"""
Prompt templates for reflection and cited generation.

Templates are ``str.format`` strings; literal JSON braces are doubled.
"""

import json
from typing import Iterable, Sequence

NO_TRAIT = "NO_TRAIT"

SPEAKER_1 = "SPEAKER_1"
SPEAKER_2 = "SPEAKER_2"

_EXTRACTION_TEMPLATE = """Task Description: Given a session of dialogue between SPEAKER_1 and SPEAKER_2, extract the
personal summaries of {speaker}, with references to the corresponding turn IDs. Ensure
the output adheres to the following rules:

* Output results in JSON format. The top-level key is "extracted_memories". The value
  should be a list of dictionaries, where each dictionary has the keys "summary" and
  "reference":
  – summary: A concise personal summary, which captures relevant information about
    {speaker}'s experiences, preferences, and background, across multiple turns.
  – reference: A list of references, each in the format of [turn_id] indicating
    where the information appears.
* If no personal summary can be extracted, return NO_TRAIT.

Example:
INPUT:
{example_input}

OUTPUT:
{example_output}

Task: Follow the JSON format demonstrated in the example above and extract the personal
summaries for {speaker} from the following dialogue session.
Input: {dialogue}
Output:
"""

_SPEAKER_1_EXAMPLE_INPUT = """* Turn 0:
  – SPEAKER_1: Did you check out that new gym in town?
  – SPEAKER_2: Yeah, I did. I'm not sure I like the vibe there, though.
* Turn 1:
  – SPEAKER_1: What was wrong with it?
  – SPEAKER_2: The folks there seemed to care more about how they looked than working
    out. It was a little too trendy for me. I'm pretty plain.
* Turn 2:
  – SPEAKER_1: Ah, got it. Well, maybe one of the older gyms will work out better
    for you, or I guess you could get that treadmill you were talking about before.
    Are you leaning one way or the other yet?
  – SPEAKER_2: I'm leaning towards the treadmill. I think it will work better for
    my lifestyle. I just don't know which type to get.
* Turn 3:
  – SPEAKER_1: I usually just lift weights there, to be honest. But I think I've
    heard good things about the NordicTrack?
  – SPEAKER_2: Yeah, I've heard good things about that, too. How is the weather in
    New England?
* Turn 4:
  – SPEAKER_1: Oh, it can get pretty foggy and rainy here too, I'm afraid. But
    it's really beautiful in the fall!
  – SPEAKER_2: Yes, I've heard about the fall colors. I may get there one day.
* Turn 5:
  – SPEAKER_1: Haha! I lived overseas in the tropics once. Sounds just like it!
  – SPEAKER_2: I'm from Alaska, so I'm pretty weather-tough."""

_SPEAKER_1_EXAMPLE_OUTPUT = {
    "extracted_memories": [
        {
            "summary": "SPEAKER_1 asked about a new gym in town and suggested older gyms or a treadmill as alternatives.",
            "reference": [0, 2],
        },
        {
            "summary": "SPEAKER_1 usually lifts weights at the gym rather than using a treadmill.",
            "reference": [3],
        },
        {
            "summary": "SPEAKER_1 lives in New England and experiences foggy and rainy weather but enjoys the fall season.",
            "reference": [4],
        },
        {
            "summary": "SPEAKER_1 has lived overseas in the tropics before.",
            "reference": [5],
        },
    ]
}

_SPEAKER_2_EXAMPLE_INPUT = """* Turn 0:
  – SPEAKER_1: Did you manage to go out on a run today?
  – SPEAKER_2: Yes, I actually was able to. I am considering joining the local gym.
    Do you prefer going to the gym?
* Turn 1:
  – SPEAKER_1: I do actually. I like the controlled environment.
  – SPEAKER_2: That's why I am thinking about it. I hate to have to run when it's
    raining, and I feel like it rains here all the time.
* Turn 2:
  – SPEAKER_1: Have you thought about maybe buying a treadmill and using that at home?
  – SPEAKER_2: I am definitely considering getting one. I'm just trying to figure
    out what I would do more: go to the gym, or stick to what I know and get a treadmill.
* Turn 3:
  – SPEAKER_1: Do you have some good gyms near you?
  – SPEAKER_2: They just built one in the small town really close to me. Before
    that, it was like an hour drive.
* Turn 4:
  – SPEAKER_1: Do you have any good parks and running trails nearby?
  – SPEAKER_2: Yeah. There is a super nice little running trail that is pretty decent.
* Turn 5:
  – SPEAKER_1: Have you joined a running club, or will you if you haven't?
  – SPEAKER_2: There isn't any around here; maybe I could start one."""

_SPEAKER_2_EXAMPLE_OUTPUT = {
    "extracted_memories": [
        {
            "summary": "SPEAKER_2 is considering joining a local gym due to frequent rain affecting outdoor runs.",
            "reference": [0, 1],
        },
        {
            "summary": "SPEAKER_2 is debating between buying a treadmill for home use or going to the gym for more workout variety.",
            "reference": [2],
        },
        {
            "summary": "A new gym was recently built nearby SPEAKER_2, replacing a previous one that was an hour away.",
            "reference": [3],
        },
        {
            "summary": "SPEAKER_2 has access to a nice local running trail.",
            "reference": [4],
        },
        {
            "summary": "SPEAKER_2 notices there is no local running club but is considering starting one.",
            "reference": [5],
        },
    ]
}

_EXAMPLES = {
    SPEAKER_1: (_SPEAKER_1_EXAMPLE_INPUT, _SPEAKER_1_EXAMPLE_OUTPUT),
    SPEAKER_2: (_SPEAKER_2_EXAMPLE_INPUT, _SPEAKER_2_EXAMPLE_OUTPUT),
}

UPDATE_MEMORY_PROMPT = """Task Description: Given a list of history personal summaries for a specific user and a new
and similar personal summary from the same user, update the personal history summaries
following the instructions below:

* Input format: Both the history personal summaries and the new personal summary
  are provided in JSON format, with the top-level keys of "history_summaries" and
  "new_summary".
* Possible update actions:
  – Add: If the new personal summary is not relevant to any history personal summary,
    add it.
    Format: Add()
  – Merge: If the new personal summary is relevant to a history personal summary,
    merge them as an updated summary.
    Format: Merge(index, merged_summary)
    Note: index is the position of the relevant history summary in the list.
    merged_summary is the merged summary of the new summary and the relevant history
    summary. Two summaries are considered relevant if they discuss the same aspect
    of the user's personal information or experiences.
* If multiple actions need to be executed, output each action in a single line, and
  separate them with a newline character ("\\n").
* Do not include additional explanations or examples in the output, only return the
  required action functions.

Example:
INPUT:
* History Personal Summaries:
  – {{"history_summaries": ["SPEAKER_1 works out although he doesn't particularly enjoy it."]}}
* New Personal Summary:
  – {{"new_summary": "SPEAKER_1 exercises every Monday and Thursday."}}

OUTPUT ACTION:
Merge(0, SPEAKER_1 exercises every Monday and Thursday, although he doesn't particularly enjoy it.)

Task: Follow the example format above to update the personal history for the given case.
INPUT:
* History Personal Summaries:
  – {history_json}
* New Personal Summary:
  – {new_summary_json}

OUTPUT ACTION:
"""

GENERATE_WITH_CITATIONS_PROMPT = """Task Description: Given a user query and a list of memories consisting of personal
summaries with their corresponding original turns, generate a natural and fluent response
while adhering to the following guidelines:

* Cite useful memories using [i], where i corresponds to the index of the cited memory.
* Do not cite memories that are not useful. If no useful memory exist, output [NO_CITE].
* Each memory is independent and may repeat or contradict others. The response must
  be directly supported by cited memories.
* If the response relies on multiple memories, list all corresponding indices, e.g.,
  [i, j, k].
* The citation is evaluated based on whether the response references the original turns,
  not the summaries.

Examples:
Case 1: Useful Memories Found
INPUT:
* User Query: SPEAKER_1: What hobbies do I enjoy?
* Memories:
  – Memory [0]: SPEAKER_1 enjoys hiking and often goes on weekend trips.
    * Speaker 1: I love spending my weekends hiking in the mountains.
  – Memory [1]: SPEAKER_1 plays the guitar and occasionally performs at open mics.
    * Speaker 1: I've been practicing guitar for years and love playing at open mics.
  – Memory [2]: SPEAKER_1 is interested in astronomy and enjoys stargazing.
    * Speaker 1: I love stargazing, especially when there's a meteor shower.

Output: You enjoy hiking, playing guitar, and stargazing. [0, 1, 2]

Case 2: No Useful Memories
INPUT:
* User Query: SPEAKER_1: What countries did I go to last summer?
* Memories:
  – Memory [0]: SPEAKER_1 enjoys hiking and often goes on weekend trips.
    * Speaker 1: I love spending my weekends hiking in the mountains.

Output: I don't have enough information to answer that. [NO_CITE]

Additional Instructions:
* Ensure the response is fluent and directly answers the user's query.
* Always cite the useful memory indices explicitly.
* Follow the format of the examples provided above.

Input:
* User Query: {query}
* Memories: {memories}

Output:
"""


def extraction_prompt(speaker: str, dialogue: str) -> str:
    """Personal-summary extraction prompt for SPEAKER_1 or SPEAKER_2."""
    if speaker not in _EXAMPLES:
        raise ValueError(f"Unknown speaker: {speaker}")
    example_input, example_output = _EXAMPLES[speaker]
    return _EXTRACTION_TEMPLATE.format(
        speaker=speaker,
        example_input=example_input,
        example_output=json.dumps(example_output, indent=2),
        dialogue=dialogue,
    )


def update_memory_prompt(history_summaries: Sequence[str], new_summary: str) -> str:
    """Add/Merge decision prompt."""
    return UPDATE_MEMORY_PROMPT.format(
        history_json=json.dumps({"history_summaries": list(history_summaries)}),
        new_summary_json=json.dumps({"new_summary": new_summary}),
    )


def generate_with_citations_prompt(query: str, memories_block: str) -> str:
    """Response-generation prompt that asks the model to cite memories."""
    return GENERATE_WITH_CITATIONS_PROMPT.format(query=query, memories=memories_block)


def format_memories(memories: Iterable[tuple[str, Sequence[tuple[str, str]]]]) -> str:
    """
    Render memories for the citation prompt.

    Args:
        memories: (topic_summary, [(speaker, text), ...]) pairs, in the order
            the model will cite them

    Returns:
        A ``<memories>`` block, or "" when there are none
    """
    blocks = []
    for index, (summary, turns) in enumerate(memories):
        lines = [f"– Memory [{index}]: {summary}"]
        for speaker, text in turns:
            lines.append(f"    {speaker}: {text.replace(chr(10), ' ')}")
        blocks.append("\n".join(lines))
    if not blocks:
        return ""
    return "<memories>\n" + "\n".join(blocks) + "\n</memories>"
