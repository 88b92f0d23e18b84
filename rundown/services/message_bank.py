"""
Message Bank

Static templates keyed by (tone, intent).

Every (MessageStyle, MessageIntent) pair must have at least one template;
validate_message_bank() checks the full cross-product and is run at
startup. A missing pair is a configuration error, never an empty result.

Placeholders: {user}, {goalType}, {completed}, {goal}, {remaining},
{progressPercent}. Numeric placeholders that the caller does not supply
are left in place.
"""

from enum import Enum
from typing import Dict, List, Optional, Union

from rundown.core.exceptions import ConfigurationError


class MessageStyle(str, Enum):
    SUPPORTIVE = "supportive"
    SNARKY = "snarky"
    CHAOTIC = "chaotic"
    COMPETITIVE = "competitive"
    ACHIEVEMENT = "achievement"


class MessageIntent(str, Enum):
    MISSED_GOAL = "missed-goal"
    WEEKLY_SUMMARY = "weekly-summary"
    CONGRATULATORY = "congratulatory"
    MOTIVATIONAL = "motivational"
    CHECK_IN = "check-in"


GOAL_TYPE_DISPLAY = {
    "runs": "running",
    "miles": "mile",
    "activities": "activity",
    "bike_activities": "biking",
    "bike_miles": "bike mile",
}


MESSAGE_TEMPLATES: Dict[MessageStyle, Dict[MessageIntent, List[str]]] = {
    MessageStyle.SUPPORTIVE: {
        MessageIntent.MISSED_GOAL: [
            "Hey! Looks like {user} didn't quite hit their weekly {goalType} goal. Maybe send them some encouragement?",
            "Just checking in - {user} could use a little motivation to stay on track with their {goalType} goals.",
            "{user} is behind on their weekly {goalType} goal. A little support goes a long way!",
            "Your friend {user} fell short of their weekly {goalType} target. Sometimes we all need a gentle nudge!",
            "Heads up - {user} didn't reach their weekly {goalType} goal. Maybe check in and see how they're doing?",
            "Hey there! {user} could use some encouragement to get back on track with their {goalType} goals.",
            "{user} missed their weekly {goalType} target - perhaps they need to hear from a supportive friend like you!",
            "Friendly reminder: {user} didn't hit their {goalType} goal this week. Your encouragement means everything!",
            "Just a heads up that {user} is behind on their weekly {goalType} goal. A kind word could make all the difference!",
            "Your workout buddy {user} could use some positive vibes after not quite reaching their weekly {goalType} target.",
        ],
        MessageIntent.WEEKLY_SUMMARY: [
            "Weekly update: {user} completed {completed} out of {goal} {goalType}. They could use some encouragement.",
            "This week {user} did {completed}/{goal} {goalType}. Maybe reach out and offer some support?",
            "Progress report: {user} finished with {completed} {goalType} this week, aiming for {goal}. They'd appreciate hearing from you.",
            "{user} had {completed} {goalType} this week with a goal of {goal}. Consider sending them some motivation.",
            "Week recap: {user} got {completed} {goalType} in, targeting {goal}. A supportive message could help.",
            "Weekly check: {user} completed {completed} out of {goal} planned {goalType}. They could use encouragement.",
            "Update on {user}: {completed}/{goal} {goalType} completed. Perfect time to offer some support.",
            "This week's summary: {user} managed {completed} {goalType} toward their {goal} goal. They'd value your encouragement.",
        ],
        MessageIntent.CONGRATULATORY: [
            "Great news! {user} crushed their {goalType} goal this week. Send them some love!",
            "{user} hit their {goalType} target: {completed} out of {goal}. They'd love to hear you noticed!",
            "Hey, {user} reached their weekly {goalType} goal. A quick congrats would mean a lot.",
            "{user} showed up for themselves this week and met their {goalType} goal. Celebrate with them!",
            "Goal met! {user} finished {completed} {goalType} this week. Tell them you're proud of them.",
        ],
        MessageIntent.MOTIVATIONAL: [
            "{user} is working toward their {goalType} goal this week. A kind word now could keep them going!",
            "Cheer {user} on! They've set a goal of {goal} {goalType} this week.",
            "{user} is building a healthy {goalType} habit. Let them know you're in their corner.",
            "A little encouragement goes a long way. {user} is chasing {goal} {goalType} this week.",
            "{user} could use a friendly boost to keep their {goalType} streak alive.",
        ],
        MessageIntent.CHECK_IN: [
            "Quick check-in: {user} is at {completed} of {goal} {goalType} with the week wrapping up soon.",
            "{user} has {remaining} {goalType} to go this week. Maybe send a gentle nudge?",
            "Halfway-ish check: {user} is {progressPercent}% of the way to their {goalType} goal.",
            "{user} still has time to hit their {goalType} goal. A supportive text could help!",
            "Just checking in - {user} is {remaining} away from their weekly {goalType} target.",
        ],
    },
    MessageStyle.SNARKY: {
        MessageIntent.MISSED_GOAL: [
            "Your workout buddy {user} is making excuses again with their {goalType} goal. Time for some tough love!",
            "Alert: {user} chose Netflix over {goalType} this week. Again.",
            "Hey, {user} is being a couch potato with their {goalType} this week. Send help (or shame).",
            "{user} needs a reality check on their 'active lifestyle' claims about {goalType}.",
            "Plot twist: The couch isn't actually helping with {goalType} goals! {user} needs to hear this.",
            "Breaking news: {user} found more excuses than {goalType} this week. Shocking!",
            "{user}'s workout gear is calling. It's feeling neglected from all those missed {goalType}.",
            "Your friend {user} is winning at everything except... {goalType}. Maybe mention that?",
            "Status update: {user} is really good at planning {goalType} they don't actually do.",
            "{user} has mastered the art of {goalType} procrastination. Time for intervention!",
        ],
        MessageIntent.WEEKLY_SUMMARY: [
            "Weekly report: {user} did {completed} {goalType} out of {goal}. Math is hard, right?",
            "This week's results: {user} completed {completed}/{goal} {goalType}. Close enough?",
            "Congrats to {user} on {completed} {goalType}! Only {remaining} short of their {goal} goal. No pressure!",
            "{user} managed {completed} out of {goal} {goalType}. I've seen snails move more consistently.",
            "This week {user} got {completed} {goalType}. Their ambitious goal? {goal}. Dream big!",
            "{user}'s weekly score: {completed}/{goal} {goalType}. Participation trophy incoming!",
            "Update on {user}: {completed} {goalType} completed. Someone's really taking their time with those goals!",
            "{user} achieved {completed} {goalType} this week. The bar wasn't even that high at {goal}!",
        ],
        MessageIntent.CONGRATULATORY: [
            "Shock alert: {user} actually hit their {goalType} goal this week! Quick, celebrate before it wears off.",
            "{user} proved us wrong and met their {goalType} goal. Honestly impressed.",
            "Breaking: {user} found their workout shoes AND used them. {completed} {goalType}. Miraculous!",
            "Against all odds, {user} reached {goal} {goalType}. Someone frame this moment.",
            "{user} hit their {goalType} target. We're as surprised as you are.",
        ],
        MessageIntent.MOTIVATIONAL: [
            "{user} says they'll do {goal} {goalType} this week. Hold them to it.",
            "Friendly reminder to {user}: the couch will still be there after the {goalType}.",
            "{user} set a {goalType} goal. Bold. Let's see if it survives the week.",
            "Motivation delivery for {user}: {goal} {goalType}, no excuses accepted.",
            "{user}'s {goalType} goal is looking at them like a gym membership in February.",
        ],
        MessageIntent.CHECK_IN: [
            "Status check: {user} is at {completed}/{goal} {goalType}. The clock is ticking, loudly.",
            "{user} has {remaining} {goalType} left and a suspicious amount of free time.",
            "{user} is {progressPercent}% done. The other part is apparently optional?",
            "Just noting that {user} still owes the universe {remaining} {goalType} this week.",
            "{user}'s {goalType} progress: {completed}. Their goal: {goal}. Their excuses: loading...",
        ],
    },
    MessageStyle.CHAOTIC: {
        MessageIntent.MISSED_GOAL: [
            "ATTENTION HUMAN! {user}'s {goalType} have filed a complaint about underutilization this week!",
            "PLOT TWIST! The fitness gods are watching {user}'s {goalType} and they're... confused? VERY CONFUSED!",
            "BREAKING: Local couch reports suspicious {user}-shaped indentation! {goalType} investigation needed!",
            "CHAOS REPORT! {user}'s fitness tracker is having an existential crisis about those {goalType}!",
            "NEWSFLASH: {user} has activated ultimate couch mode this week! {goalType} emergency protocol initiated!",
            "STEP RIGHT UP! Witness the amazing disappearing {goalType} enthusiast {user}! Where did they go?!",
            "SCIENCE UPDATE: Researchers baffled by {user}'s ability to avoid {goalType} this week!",
            "DRAMATIC ANNOUNCEMENT! {user}'s {goalType} motivation has left the building!",
            "CHAOS THEORY: {user}'s workout gear is staging a peaceful protest about missed {goalType}!",
            "WEATHER REPORT: High chance of couch storms affecting {user}'s {goalType} area this week!",
        ],
        MessageIntent.WEEKLY_SUMMARY: [
            "WEEKLY CHAOS REPORT! {user} completed {completed}/{goal} {goalType}! WHAT EVEN IS REALITY?!",
            "BREAKING NEWS: Local athlete {user} did {completed} {goalType}! Scientists are taking notes!",
            "STEP RIGHT UP! See the amazing {user} who got {completed} {goalType}! Goal was {goal}! MATH IS WILD!",
            "SPACE UPDATE: {user} completed {completed} {goalType} this week! Houston, we have... confusion!",
            "LIGHTNING ROUND RESULTS! {user}: {completed} {goalType}! Target: {goal}! Logic: OPTIONAL!",
            "BULLSEYE-ISH! {user} hit {completed}/{goal} {goalType}! Close enough for horseshoes!",
            "CIRCUS PERFORMANCE REVIEW: {user} performed {completed} {goalType} acts! Audience wanted {goal}!",
            "WAVES OF UPDATES! {user} achieved {completed} {goalType}! The ocean called, they're intrigued!",
        ],
        MessageIntent.CONGRATULATORY: [
            "CELEBRATION MODE ACTIVATED! {user} CONQUERED THEIR {goalType} GOAL!",
            "ALERT: {user} IS OFFICIALLY A {goalType} MACHINE! BEEP BEEP!",
            "SUCCESS DETECTED! {user} HAS ACHIEVED LEGENDARY {goalType} STATUS!",
            "CONFETTI CANNONS ENGAGED! {user} did {completed} {goalType}! THE PROPHECY IS FULFILLED!",
            "THE COUCH HAS BEEN DEFEATED! {user} hit {goal} {goalType} THIS WEEK!",
        ],
        MessageIntent.MOTIVATIONAL: [
            "INCOMING TRANSMISSION FOR {user}: {goal} {goalType} REQUIRED. THE UNIVERSE IS WATCHING.",
            "HYPE SQUAD ASSEMBLE! {user} is going for {goal} {goalType} this week!",
            "LEGEND SAYS {user} CAN DO {goal} {goalType}. PROVE THE LEGEND RIGHT!",
            "ENERGY LEVELS RISING! {user}'s {goalType} era starts NOW!",
            "ALL UNITS! Send {user} maximum {goalType} vibes immediately!",
        ],
        MessageIntent.CHECK_IN: [
            "CHECKPOINT REACHED! {user}: {completed}/{goal} {goalType}! SUNDAY IS COMING!",
            "STATUS: {progressPercent}% LOADED! {user} needs {remaining} more {goalType}!",
            "COUNTDOWN INITIATED! {user} has {remaining} {goalType} to go! TICK TOCK!",
            "MID-WEEK MAYHEM! {user} is at {completed} {goalType}! GOAL IS {goal}! GO GO GO!",
            "RADAR PING! {user}'s {goalType} progress detected at {progressPercent}%!",
        ],
    },
    MessageStyle.COMPETITIVE: {
        MessageIntent.MISSED_GOAL: [
            "{user} didn't hit their weekly {goalType} goal. Think they can handle a challenge to get back on track?",
            "Your training partner {user} is falling behind this week with {goalType}. Time to throw down the gauntlet!",
            "{user} missed their weekly {goalType} target. Challenge them to prove they're not giving up!",
            "Opportunity alert: {user} fell short with {goalType} this week. Perfect time to motivate with some competition!",
            "{user} is letting their {goalType} goals slip. Think they're tough enough to bounce back?",
            "Your workout buddy {user} didn't reach their weekly {goalType} target. Challenge their dedication!",
            "{user} chose comfort over commitment with {goalType} this week. Time to question their champion mindset!",
            "Alert: {user} missed their weekly {goalType} goal. Do they still have what it takes?",
            "{user} came up short with {goalType} this week. Perfect opportunity to challenge their resolve!",
            "Your competitor {user} is showing weakness with {goalType}. Time to push them back to excellence!",
        ],
        MessageIntent.WEEKLY_SUMMARY: [
            "{user} completed {completed}/{goal} {goalType} this week. Can they level up next week?",
            "Weekly stats: {user} hit {completed} {goalType} (goal: {goal}). Ready to raise the bar?",
            "{user} managed {completed} out of {goal} {goalType}. Time to challenge them for more!",
            "Performance update: {user} did {completed} {goalType}. Think they can beat that next week?",
            "Scoreboard: {user} - {completed} {goalType}. Can they dominate next week's challenge?",
            "This week's results: {user} completed {completed}/{goal} {goalType}. Game on for next week!",
            "{user} finished with {completed} {goalType} this week. Challenge them to go bigger!",
            "Weekly performance: {user} logged {completed} {goalType}. Time to up the ante?",
        ],
        MessageIntent.CONGRATULATORY: [
            "{user} won the week: {completed}/{goal} {goalType}. Can you keep up with them?",
            "Victory! {user} hit their {goalType} goal. Time to set the bar even higher.",
            "{user} crushed {goal} {goalType}. Challenge them to defend the title next week!",
            "Scoreboard says {user} beat their {goalType} target. Who's stepping up to match it?",
            "{user} closed out the week on top of their {goalType} goal. Champion behavior.",
        ],
        MessageIntent.MOTIVATIONAL: [
            "{user} is chasing {goal} {goalType} this week. Bet they can't do it? Tell them.",
            "Game on: {user} set a target of {goal} {goalType}. Challenge them to beat it.",
            "{user} is in training mode. Push them toward {goal} {goalType}!",
            "Rivalry time. Dare {user} to outdo last week's {goalType}.",
            "{user}'s {goalType} goal is on the line. Get in their ear and push the pace.",
        ],
        MessageIntent.CHECK_IN: [
            "Halftime score: {user} {completed}, goal {goal} {goalType}. Time to push!",
            "{user} needs {remaining} more {goalType} to win the week. Call them out.",
            "{user} is {progressPercent}% to the finish line. Don't let them coast.",
            "Leaderboard check: {user} at {completed}/{goal} {goalType}. Still anyone's game.",
            "Clock's running. {user} has {remaining} {goalType} left to close it out.",
        ],
    },
    MessageStyle.ACHIEVEMENT: {
        MessageIntent.MISSED_GOAL: [
            "{user} didn't reach their weekly {goalType} goal and is behind schedule. Help them get back on track?",
            "Progress update: {user} is off target with {goalType} this week. They need support to reach their milestone!",
            "{user} fell short of their weekly {goalType} achievement target. Time to help them refocus!",
            "Milestone alert: {user} is {remaining} {goalType} behind schedule. Encouragement needed!",
            "{user}'s weekly {goalType} goal is in jeopardy. Help them get back to their plan!",
            "Achievement tracker: {user} is falling short of their weekly {goalType} target. Support their comeback!",
            "Goal status: {user} missed their weekly {goalType} target. They need motivation to stay on track!",
            "Progress report: {user} is behind schedule with {goalType} and needs help reaching this week's milestone!",
            "Target missed: {user} didn't hit their weekly {goalType} goal. Help them realign with their objectives!",
            "{user} is off pace for their weekly {goalType} objective. Perfect time to offer milestone support!",
        ],
        MessageIntent.WEEKLY_SUMMARY: [
            "Weekly progress: {user} completed {completed}/{goal} {goalType}. They're {progressPercent}% to their goal!",
            "Achievement report: {user} hit {completed} {goalType} this week (target: {goal}). Progress tracking shows they need support.",
            "Milestone update: {user} accomplished {completed} out of {goal} planned {goalType}. Steady progress toward their target.",
            "Progress tracking: {user} completed {completed} {goalType}, {remaining} away from their weekly goal!",
            "Goal status: {user} achieved {completed}/{goal} {goalType}. They could use encouragement to reach their target.",
            "Weekly metrics: {user} logged {completed} {goalType} toward their {goal} target. They need support to close the gap.",
            "Achievement summary: {user} finished {completed} {goalType} this week. Building toward their bigger goal of {goal}.",
            "Progress milestone: {user} completed {completed} {goalType}. Each one brings them closer to their {goal} target.",
        ],
        MessageIntent.CONGRATULATORY: [
            "Milestone unlocked: {user} completed {completed}/{goal} {goalType} this week!",
            "Achievement report: {user} reached 100% of their weekly {goalType} target.",
            "{user} hit their {goalType} milestone. Another week of progress on the books!",
            "Goal status: achieved. {user} logged {completed} {goalType} against a target of {goal}.",
            "{user} is on track and on target with {goalType}. Recognize the progress!",
        ],
        MessageIntent.MOTIVATIONAL: [
            "New milestone in progress: {user} is targeting {goal} {goalType} this week.",
            "{user}'s plan this week: {goal} {goalType}. Support the next step toward their goal.",
            "Every {goalType} counts. {user} is building toward {goal} this week.",
            "{user} has a clear {goalType} target. Help them lock in the habit.",
            "Progress compounds. Encourage {user} to stay on plan with {goalType}.",
        ],
        MessageIntent.CHECK_IN: [
            "Progress checkpoint: {user} is at {progressPercent}% of their weekly {goalType} target.",
            "{user} has logged {completed}/{goal} {goalType}. {remaining} to reach this week's milestone.",
            "Tracking update: {user} needs {remaining} more {goalType} to stay on plan.",
            "Milestone watch: {user} is {progressPercent}% complete with the week almost done.",
            "{user} is {remaining} {goalType} from their target. A timely nudge could close the gap.",
        ],
    },
}


def _coerce_style(style: Union[MessageStyle, str]) -> MessageStyle:
    try:
        return MessageStyle(style)
    except ValueError as e:
        raise ConfigurationError(f"Unknown message style: {style}") from e


def _coerce_intent(intent: Union[MessageIntent, str]) -> MessageIntent:
    try:
        return MessageIntent(intent)
    except ValueError as e:
        raise ConfigurationError(f"Unknown message intent: {intent}") from e


def get_templates(style: Union[MessageStyle, str], intent: Union[MessageIntent, str]) -> List[str]:
    """Templates for (style, intent). Raises ConfigurationError if none exist."""
    style = _coerce_style(style)
    intent = _coerce_intent(intent)
    templates = MESSAGE_TEMPLATES.get(style, {}).get(intent)
    if not templates:
        raise ConfigurationError(f"No message templates for style={style.value} intent={intent.value}")
    return templates


def validate_message_bank(bank: Optional[Dict] = None) -> None:
    """Check that every (style, intent) pair has at least one template."""
    bank = MESSAGE_TEMPLATES if bank is None else bank
    missing = [
        f"{style.value}/{intent.value}"
        for style in MessageStyle
        for intent in MessageIntent
        if not bank.get(style, {}).get(intent)
    ]
    if missing:
        raise ConfigurationError(f"Message bank is missing templates for: {', '.join(missing)}")


def format_goal_type(goal_type: str) -> str:
    return GOAL_TYPE_DISPLAY.get(goal_type, goal_type)


def _format_number(value) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def format_message(template: str, data: Dict) -> str:
    """
    Substitute placeholders in `template`.

    `data` keys: user, goalType, completed, goal, remaining, progressPercent.
    Keys that are absent (or None) leave their placeholder untouched.
    """
    message = template
    if data.get("user") is not None:
        message = message.replace("{user}", str(data["user"]))

    for key in ("completed", "goal", "remaining", "progressPercent"):
        if data.get(key) is not None:
            message = message.replace("{" + key + "}", _format_number(data[key]))

    if data.get("goalType"):
        message = message.replace("{goalType}", format_goal_type(data["goalType"]))

    return message
