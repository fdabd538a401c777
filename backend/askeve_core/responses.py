from __future__ import annotations

OPENING_STATEMENT = (
    "Hello, I'm Ask Eve Assist - a digital assistant here to help you find information about "
    "gynaecological health. I'm not a medical professional or a nurse, but I can help you access "
    "trusted information from The Eve Appeal. How can I support you today?"
)

FOLLOW_UP_GREETING = "Hello again. What would you like to know about today?"

WELCOME_BACK = "Welcome back. I'm still here if there's anything else you'd like to know."

EMERGENCY_CONTACTS = (
    "Emergency contacts:\n"
    "- Emergency services: 999\n"
    "- Samaritans (free, 24/7): 116 123\n"
    "- Crisis text line: text SHOUT to 85258\n"
    "- NHS urgent advice: 111"
)

CRISIS_SELF_HARM = (
    "I'm really concerned about what you've shared, and I want you to know you don't have to face "
    "this alone. If you are in immediate danger, please call 999 now. Samaritans are available any "
    "time on 116 123 to talk things through."
)

CRISIS_MEDICAL = (
    "What you're describing could be a medical emergency. Please call 999 now or go to your nearest "
    "A&E. If you're unsure, NHS 111 can advise you straight away."
)

CRISIS_NURSE_OFFER = (
    "If it would help, one of The Eve Appeal's specialist nurses can call you back. Reply 'yes' if "
    "you'd like that."
)

MANUAL_CONTACT = (
    "You can contact The Eve Appeal's Ask Eve nurse service directly on 0808 802 0019, by email at "
    "nurse@eveappeal.org.uk, or at eveappeal.org.uk/ask-eve."
)

TECHNICAL_DIFFICULTY = (
    "I'm sorry, I'm having some technical difficulties right now. If you need urgent help, call 999, "
    "NHS 111, or Samaritans on 116 123. " + MANUAL_CONTACT
)

GENERIC_HELP = "I'm sorry, I lost track of where we were. How can I help you today?"

UNCLEAR_INTENT = (
    "I'm not quite sure what you're looking for. I can help with:\n"
    "1. Information about gynaecological health and cancer symptoms\n"
    "2. Arranging a callback from a specialist nurse\n"
    "3. Support options from The Eve Appeal"
)

CONTENT_UNAVAILABLE = (
    "I can't reach our health information library at the moment. NHS 111 or your GP can help with "
    "health questions. " + MANUAL_CONTACT
)

NO_CONTENT_FOUND = (
    "I couldn't find specific information on that in The Eve Appeal's resources. A specialist nurse "
    "may be able to help, or you can speak to your GP."
)

MEDICAL_DISCLAIMER = (
    "This is general information, not medical advice. Please speak to your GP if you're worried "
    "about any symptoms."
)

SUPPORT_OPTIONS = (
    "Here are the ways The Eve Appeal can support you:\n"
    "- Ask Eve nurse line: 0808 802 0019 (free)\n"
    "- Email a nurse: nurse@eveappeal.org.uk\n"
    "- Request a callback from a specialist nurse here in the chat\n"
    "- Information and stories at eveappeal.org.uk"
)

GOODBYE = (
    "Thank you for talking with me. Take care, and remember you can come back any time or call the "
    "Ask Eve nurse line on 0808 802 0019."
)

CONSENT_BLOCKED = (
    "I can only arrange a nurse callback once you've agreed to us storing your contact details, "
    "and I can't do that in this chat right now. " + MANUAL_CONTACT
)

CONSENT_DEGRADED = (
    "I won't collect any personal details here, but you can still speak to a nurse. " + MANUAL_CONTACT
)

# Escalation subflow copy.

CONSENT_PROMPT = (
    "I can arrange for one of The Eve Appeal's specialist nurses to contact you. To do this I'll need "
    "your name and a phone number or email address, which will only be used to arrange the callback. "
    "Are you happy for me to collect these details?"
)

CONSENT_RENEWAL_PROMPT = (
    "You agreed to share your contact details with us a while ago, and that agreement has now expired. "
    "Are you happy for me to collect your name and contact details again so a nurse can reach you?"
)

CONSENT_CLARIFY = "Please reply 'yes' if you're happy for me to collect your details, or 'no' if not."

CONSENT_INFO = (
    "I'd need your first name and either a phone number or an email address. We only use these to "
    "arrange the nurse callback. " + CONSENT_CLARIFY
)

CONSENT_DECLINED = (
    "That's absolutely fine, I won't collect any details. " + MANUAL_CONTACT
)

CONSENT_RECORD_FAILED = (
    "I'm sorry, I couldn't save your agreement just now, so I haven't collected any details. "
    + MANUAL_CONTACT
)

ASK_NAME = "Thank you. What name should the nurse use when they contact you?"

NAME_INVALID = "Sorry, I didn't catch a name there. Could you tell me your first name?"

ASK_CONTACT_METHOD = (
    "Thanks, {name}. How would you like the nurse to contact you?\n"
    "1. Phone call\n"
    "2. Email"
)

CONTACT_METHOD_INVALID = "Please reply 1 for a phone call or 2 for an email."

ASK_PHONE = "What's the best UK phone number for the nurse to call?"

ASK_EMAIL = "What email address should the nurse use?"

CONFIRM_DETAILS = (
    "Please check these details:\n"
    "- Name: {name}\n"
    "- Contact by: {method}\n"
    "- {label}: {details}\n"
    "Is this correct? Reply 'yes' to confirm or 'change' to edit."
)

CONFIRM_CLARIFY = "Please reply 'yes' to confirm these details, or 'change' to edit them."

ESCALATION_COMPLETED = (
    "Thank you, {name}. I've passed your request to The Eve Appeal's nurse team. {sla} "
    "If anything changes or you feel worse, please call NHS 111, or 999 in an emergency."
)

ESCALATION_DISPATCH_FAILED = (
    "I'm sorry, I wasn't able to send your request to the nurse team just now. " + MANUAL_CONTACT
)

ESCALATION_CANCELLED = "No problem, I've cancelled that request and cleared the details you gave me."

ESCALATION_TIMEOUT = (
    "This callback request has taken longer than expected, so I've closed it and cleared the details "
    "for your privacy. You can start again any time by asking to speak to a nurse."
)

ESCALATION_TIMEOUT_WARNING = "We'll need to finish this request in the next few minutes."

SLA_TEXT = {
    "high": "A nurse will aim to contact you within 2 hours.",
    "medium": "A nurse will aim to contact you within 24 hours.",
    "low": "A nurse will aim to contact you within 2-3 working days.",
}

SERVICE_UNAVAILABLE = "I'm sorry, I couldn't complete that just now. " + MANUAL_CONTACT
