"""
Text analysis attached to collected posts: a lexicon sentiment score tuned for
social media text, and word frequency for profile reports.
"""

import re
import logging
from collections import Counter
from typing import Dict, Iterable, Optional, Set

import nltk
from nltk.tokenize import RegexpTokenizer, TweetTokenizer

from xscraper.models import Record

logger = logging.getLogger(__name__)

# Emoji valences on a -1..1 scale (Emoji Sentiment Ranking, most frequent entries).
EMOJI_SCORES = {
    '😂': 0.221, '❤': 0.746, '♥': 0.657, '😍': 0.678, '😭': -0.093,
    '😘': 0.701, '😊': 0.657, '👌': 0.563, '💕': 0.632, '👏': 0.520,
    '😁': 0.449, '☺': 0.659, '😉': 0.463, '👍': 0.521, '🙏': 0.418,
    '😎': 0.491, '😢': -0.173, '😒': -0.324, '😩': -0.368, '😔': -0.151,
    '😡': -0.173, '😠': -0.385, '😞': -0.318, '💔': -0.121, '😤': -0.170,
    '🎉': 0.735, '🔥': 0.130, '💯': 0.506, '🙌': 0.572, '😀': 0.572,
    '🤔': 0.000, '😱': -0.115, '🤮': -0.600, '👎': -0.493,
}
EMOJI_RE = re.compile("[\U0001F1E6-\U0001FAFF\u2600-\u27BF\u2B00-\u2BFF]\uFE0F?")

URL_RE = re.compile(r"https?://\S+")
MENTION_RE = re.compile(r"@\w+")
HASHTAG_RE = re.compile(r"#\w+")
SPECIAL_CHARS_RE = re.compile(r"[^\w\s]")
CAPS_RUN_RE = re.compile(r"[A-Z]{3,}")

NLTK_STOPWORD_LANGUAGES = {
    'ar': 'arabic', 'da': 'danish', 'de': 'german', 'en': 'english', 'es': 'spanish',
    'fi': 'finnish', 'fr': 'french', 'hu': 'hungarian', 'id': 'indonesian', 'it': 'italian',
    'nl': 'dutch', 'no': 'norwegian', 'pt': 'portuguese', 'ro': 'romanian', 'ru': 'russian',
    'sv': 'swedish', 'tr': 'turkish',
}


def _ensure_nltk_resource(path: str, package: str):
    try:
        nltk.data.find(path)
    except LookupError:
        logger.info(f"Downloading NLTK {package} resource...")
        nltk.download(package, quiet=True)


def load_vader_lexicon() -> Dict[str, float]:
    _ensure_nltk_resource('sentiment/vader_lexicon.zip', 'vader_lexicon')
    from nltk.sentiment.vader import SentimentIntensityAnalyzer
    return dict(SentimentIntensityAnalyzer().lexicon)


def load_stopwords(language: str = 'en') -> Set[str]:
    _ensure_nltk_resource('corpora/stopwords', 'stopwords')
    from nltk.corpus import stopwords
    name = NLTK_STOPWORD_LANGUAGES.get(language.lower())
    if name is None:
        logger.warning(f"Stopwords for language '{language}' not found, using English stopwords")
        name = 'english'
    return set(stopwords.words(name))


# ===============================================
# ||               SENTIMENT                   ||
# ===============================================
class SentimentAnalyzer:
    """Lexicon scorer that also counts emojis and shouting."""
    def __init__(self, lexicon: Optional[Dict[str, float]] = None, emoji_scores: Optional[Dict[str, float]] = None):
        self.lexicon = lexicon if lexicon is not None else load_vader_lexicon()
        self.emoji_scores = emoji_scores if emoji_scores is not None else EMOJI_SCORES
        self.tokenizer = TweetTokenizer(preserve_case=False, reduce_len=True, strip_handles=True)

    def analyze(self, text: Optional[str]) -> Dict:
        if not text:
            return {'score': 0, 'comparative': 0, 'positive': [], 'negative': [], 'emojis': []}

        emojis = []
        for match in EMOJI_RE.finditer(text):
            symbol = match.group().rstrip('\uFE0F')
            if symbol in self.emoji_scores:
                emojis.append({'emoji': symbol, 'score': self.emoji_scores[symbol]})
        emoji_score = sum(e['score'] for e in emojis)

        tokens = [
            token for token in self.tokenizer.tokenize(EMOJI_RE.sub(' ', text))
            if any(ch.isalnum() for ch in token)
        ]
        positive, negative = [], []
        text_score = 0.0
        for token in tokens:
            valence = self.lexicon.get(token)
            if not valence:
                continue
            text_score += valence
            (positive if valence > 0 else negative).append(token)

        intensifier = (1.2 if '!' in text else 1.0) * (1.2 if CAPS_RUN_RE.search(text) else 1.0)
        score = max(-5.0, min(5.0, (text_score + emoji_score * 0.5) * intensifier))

        return {
            'score': round(score, 4),
            'comparative': round(score / len(tokens), 4) if tokens else 0,
            'positive': positive,
            'negative': negative,
            'emojis': emojis,
        }

    def annotate(self, record: Record):
        record.sentiment = self.analyze(record.body)


# ===============================================
# ||             WORD FREQUENCY                ||
# ===============================================
_word_tokenizer = RegexpTokenizer(r"\w+")


def clean_text(text: Optional[str], keep_hashtags: bool = False, keep_mentions: bool = False) -> str:
    if not text:
        return ""
    cleaned = URL_RE.sub('', text.lower())
    if not keep_mentions:
        cleaned = MENTION_RE.sub('', cleaned)
    if not keep_hashtags:
        cleaned = HASHTAG_RE.sub('', cleaned)
    cleaned = SPECIAL_CHARS_RE.sub(' ', cleaned)
    return re.sub(r"\s+", ' ', cleaned).strip()


def analyze_word_frequency(records: Iterable[Record], min_word_length: int = 2, exclude_stopwords: bool = True,
                           language: str = 'en', stopwords: Optional[Set[str]] = None) -> Dict:
    records = list(records)
    if exclude_stopwords and stopwords is None:
        stopwords = load_stopwords(language)
    excluded = stopwords if exclude_stopwords else set()

    counts: Counter = Counter()
    for record in records:
        for word in _word_tokenizer.tokenize(clean_text(record.body)):
            if len(word) < min_word_length or word in excluded:
                continue
            counts[word] += 1

    total_words = sum(counts.values())
    word_frequency = {
        word: {'count': count, 'percentage': f"{count / total_words * 100:.2f}%"}
        for word, count in counts.most_common()
    }
    return {
        'analyzed_posts': len(records),
        'total_words': total_words,
        'unique_words': len(counts),
        'word_frequency': word_frequency,
    }
