import json, re
from typing import Dict, Iterable, List, Optional, Union

from .errors import InitError

CLS_ID = 101
SEP_ID = 102
UNK_ID = 100
MAX_LEN = 128

_DISALLOWED = re.compile(r"[^a-z0-9\s]")


class WordTokenizer:
    """
    Whitespace word tokenizer over a fixed BERT-style vocabulary.
    Input:  raw text
    Output: [CLS] id ... [SEP] id, at most max_len ids
    """

    def __init__(self, vocab: Dict[str, int], max_len: int = MAX_LEN,
                 cls_id: int = CLS_ID, sep_id: int = SEP_ID, unk_id: int = UNK_ID):
        if max_len < 2:
            raise InitError(f"max_len must leave room for [CLS]/[SEP], got {max_len}")
        self.vocab = vocab
        self.max_len = max_len
        self.cls_id = vocab.get("[CLS]", cls_id)
        self.sep_id = vocab.get("[SEP]", sep_id)
        self.unk_id = vocab.get("[UNK]", unk_id)

    @classmethod
    def from_tokenizer_json(cls, data: Union[bytes, str, dict], max_len: int = MAX_LEN) -> "WordTokenizer":
        """Build from a Hugging Face tokenizer.json (uses model.vocab only)."""
        try:
            obj = json.loads(data) if isinstance(data, (bytes, str)) else data
            raw = obj["model"]["vocab"]
            vocab = {str(k): int(v) for k, v in raw.items()}
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise InitError(f"tokenizer.json unusable: {e}") from e
        if not vocab:
            raise InitError("tokenizer.json has an empty vocabulary")
        return cls(vocab, max_len=max_len)

    @classmethod
    def from_vocab_txt(cls, lines: Iterable[str], max_len: int = MAX_LEN) -> "WordTokenizer":
        vocab = {}
        for idx, line in enumerate(lines):
            tok = line.rstrip("\r\n")
            if tok and tok not in vocab:
                vocab[tok] = idx
        if not vocab:
            raise InitError("vocab.txt is empty")
        return cls(vocab, max_len=max_len)

    @staticmethod
    def normalize(text: str) -> str:
        return _DISALLOWED.sub("", (text or "").lower())

    def words(self, text: str) -> List[str]:
        return self.normalize(text).split()

    def encode(self, text: str, max_len: Optional[int] = None) -> List[int]:
        limit = max_len or self.max_len
        body = [self.vocab.get(w, self.unk_id) for w in self.words(text)]
        body = body[: max(0, limit - 2)]
        return [self.cls_id, *body, self.sep_id]
