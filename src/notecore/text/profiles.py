"""Per-language lexical data for the language analyzers.

Each profile carries the stopwords removed by its analyzer and the
suffixes stripped by its light stemmer (longest first).
"""
from dataclasses import dataclass
from typing import Dict, FrozenSet, Tuple


@dataclass(frozen=True)
class LanguageProfile:
    """Lexical description of one supported language."""

    code: str
    name: str
    stopwords: FrozenSet[str]
    suffixes: Tuple[str, ...] = ()
    min_stem_length: int = 3


def _words(text: str) -> FrozenSet[str]:
    return frozenset(text.split())


ENGLISH = LanguageProfile(
    code="en",
    name="English",
    stopwords=_words(
        "a an and are as at be been but by can could did do does for from had "
        "has have he her his i if in into is it its me my no not of on or our "
        "she so than that the their them then there these they this to too was "
        "we were what when where which who will with would you your"
    ),
    suffixes=(
        "ational", "fulness", "iveness", "ization", "ousness",
        "ements", "ations", "ingly", "ments", "ation", "ement", "ness",
        "ment", "ings", "ies", "ing", "ied", "ers", "est", "ful", "ous",
        "ive", "ly", "ed", "er", "es", "s",
    ),
)

GERMAN = LanguageProfile(
    code="de",
    name="German",
    stopwords=_words(
        "aber als am an auch auf aus bei bin bis bist da dann das dass dem den "
        "der des die dies diese doch du ein eine einem einen einer er es für "
        "hat hatte ich ihr im in ist ja kein mit muss nach nicht noch nur oder "
        "sein sich sie sind so um und uns von vor war wie wir wird zu zum zur"
    ),
    suffixes=(
        "ungen", "heiten", "keiten", "ung", "heit", "keit", "isch", "lich",
        "ern", "end", "em", "en", "er", "es", "e", "s", "n",
    ),
)

FRENCH = LanguageProfile(
    code="fr",
    name="French",
    stopwords=_words(
        "à au aux avec ce ces dans de des du elle en est et être il ils je la "
        "le les leur lui ma mais me mes moi mon ne nous on ou par pas pour qu "
        "que qui sa se ses son sont sur ta te tes toi ton tu un une vous y"
    ),
    suffixes=(
        "issements", "issement", "ements", "ations", "ation", "ement",
        "euses", "euse", "ités", "ité", "ives", "ive", "eux", "aux",
        "ent", "és", "ée", "es", "er", "ez", "é", "e", "s",
    ),
)

SPANISH = LanguageProfile(
    code="es",
    name="Spanish",
    stopwords=_words(
        "a al como con de del el ella en era es esta este ha la las le lo los "
        "más me mi muy no nos o para pero por que se si sin su sus también te "
        "tu un una y ya yo"
    ),
    suffixes=(
        "amientos", "imientos", "amiento", "imiento", "aciones", "ación",
        "mente", "anzas", "anza", "ables", "able", "idad", "ando", "iendo",
        "ados", "idos", "ado", "ido", "ar", "er", "ir", "os", "as", "es",
        "o", "a", "e", "s",
    ),
)

ITALIAN = LanguageProfile(
    code="it",
    name="Italian",
    stopwords=_words(
        "a al alla anche che chi ci come con da dal del della di e è gli ha "
        "ho i il in io la le lei lo loro lui ma mi nel nella noi non per più "
        "quella questo se si sono su tu un una uno voi"
    ),
    suffixes=(
        "amenti", "imenti", "amento", "imento", "azioni", "azione", "mente",
        "abile", "ando", "endo", "ato", "ata", "ati", "ate", "ito", "ita",
        "are", "ere", "ire", "i", "e", "o", "a",
    ),
)

DUTCH = LanguageProfile(
    code="nl",
    name="Dutch",
    stopwords=_words(
        "aan al als bij dat de die dit een en er had heb heeft het hij hoe "
        "ik in is je kan maar me met mij mijn naar niet nog of om ons ook op "
        "over te tot uit van voor was wat we wel wij zal ze zich zij zijn"
    ),
    suffixes=(
        "heden", "ingen", "heid", "ing", "lijk", "en", "er", "es", "je",
        "e", "s",
    ),
)

PORTUGUESE = LanguageProfile(
    code="pt",
    name="Portuguese",
    stopwords=_words(
        "a ao aos as com como da das de do dos e é ela ele em era essa esse "
        "está eu foi isso já mais mas me meu minha muito na nas não no nos "
        "o os ou para pela pelo por que se sem seu sua também um uma você"
    ),
    suffixes=(
        "amentos", "imentos", "amento", "imento", "ações", "ação", "mente",
        "idade", "ando", "endo", "ado", "ido", "ar", "er", "ir", "os", "as",
        "es", "o", "a", "e", "s",
    ),
)


LANGUAGE_PROFILES: Dict[str, LanguageProfile] = {
    profile.code: profile
    for profile in (ENGLISH, GERMAN, FRENCH, SPANISH, ITALIAN, DUTCH, PORTUGUESE)
}

# Display names for detected languages without an analyzer
LANGUAGE_NAMES: Dict[str, str] = {
    "sv": "Swedish",
    "no": "Norwegian",
    "da": "Danish",
    "fi": "Finnish",
    "ru": "Russian",
    "el": "Greek",
    "ar": "Arabic",
    "he": "Hebrew",
    "ko": "Korean",
    "ja": "Japanese",
    "zh": "Chinese",
}
