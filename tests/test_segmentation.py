from aperture.pipelines.analyzer import group_sentences_by_paragraph, split_into_sentences


def _texts(content):
    return [sentence.text for sentence in split_into_sentences(content)]


def test_middle_initial_does_not_end_sentence():
    assert _texts("Jason W. Ricketts called. He left.") == [
        "Jason W. Ricketts called.",
        "He left.",
    ]


def test_known_abbreviation_does_not_end_sentence():
    assert _texts("Dr. Smith arrived. He smiled.") == ["Dr. Smith arrived.", "He smiled."]


def test_initial_followed_by_sentence_starter_ends_sentence():
    assert _texts("Plan B. It worked.") == ["Plan B.", "It worked."]


def test_sentences_never_cross_newlines():
    content = "No period on this line\nNext line ends here."
    assert _texts(content) == ["No period on this line", "Next line ends here."]


def test_offsets_slice_back_to_text():
    content = "  The storm arrived.  Workers waited.\n\nBy noon, Mr. Lee said it was over!  "
    sentences = split_into_sentences(content)

    assert [sentence.id for sentence in sentences] == list(range(len(sentences)))
    assert len(sentences) == 3
    for sentence in sentences:
        assert content[sentence.start : sentence.end] == sentence.text
        assert sentence.text == sentence.text.strip()


def test_empty_content_has_no_sentences():
    assert split_into_sentences("") == []
    assert split_into_sentences("\n\n   \n") == []


def test_group_sentences_by_paragraph_breaks_on_newlines():
    content = "First one. Second one.\n\nThird one.\nFourth one."
    sentences = split_into_sentences(content)
    groups = group_sentences_by_paragraph(content, sentences)

    assert [group.index for group in groups] == [0, 1, 2]
    assert [[sentence.text for sentence in group.sentences] for group in groups] == [
        ["First one.", "Second one."],
        ["Third one."],
        ["Fourth one."],
    ]
