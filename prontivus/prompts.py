"""Prompt templates for the consultation assistant.

The builders return OpenAI-style message lists.  Clinical text is Brazilian
Portuguese; the JSON keys the model must return are fixed here and read back
by :func:`prontivus.consultation.validate_analysis`.
"""

from typing import Dict, List, Optional

ANALYSIS_TEMPERATURE = 0.3
ANALYSIS_MAX_TOKENS = 2000

MAX_CID_CODES = 5
MAX_EXAMS = 10
MAX_PRESCRIPTIONS = 10

ANALYSIS_SYSTEM_PROMPT = f"""Você é um assistente médico especializado em análise de consultas médicas.
Sua função é analisar transcrições de consultas e gerar:
1. Uma anamnese completa, estruturada e profissional em português brasileiro
2. Códigos CID-10 sugeridos (máximo {MAX_CID_CODES}) com scores de confiança entre 0 e 1
3. Exames sugeridos com justificativas clínicas
4. Prescrições médicas sugeridas com medicamentos, dosagens, posologias e durações

IMPORTANTE:
- A anamnese deve seguir o formato médico padrão brasileiro
- Use títulos em MAIÚSCULAS seguidos de dois pontos (:) para seções principais, por exemplo "QUEIXA PRINCIPAL", "HISTÓRICO DA DOENÇA ATUAL", "ANTECEDENTES PESSOAIS", "MEDICAÇÕES EM USO", "EXAME FÍSICO"
- Os códigos CID-10 devem ser válidos e específicos
- Os exames devem ser clinicamente relevantes
- Prescrições: nomes comerciais ou genéricos comuns no Brasil, dosagem padrão (ex: "500mg"), posologia clara (ex: "1 comprimido de 8/8h") e duração (ex: "7 dias")
- Retorne APENAS um JSON válido, sem texto adicional

Formato JSON esperado:
{{
  "anamnesis": "ANAMNESE\\n\\nQUEIXA PRINCIPAL:\\n...\\n\\nHISTÓRICO DA DOENÇA ATUAL:\\n...",
  "cid_codes": [
    {{"code": "I10", "description": "Hipertensão essencial (primária)", "score": 0.9}}
  ],
  "exams": [
    {{"name": "Hemograma completo", "type": "Laboratorial", "justification": "Avaliação geral"}}
  ],
  "prescriptions": [
    {{"medication": "Amoxicilina", "dosage": "500mg", "frequency": "1 comprimido de 8/8h", "duration": "7 dias", "justification": "Infecção bacteriana"}}
  ]
}}"""


def build_analysis_prompt(transcript: str, extra_context: Optional[str] = None) -> List[Dict[str, str]]:
    """Return messages asking for anamnesis, CID codes, exams and prescriptions."""

    user = (
        "Analise a seguinte transcrição de consulta médica e gere a anamnese estruturada, "
        "códigos CID-10, exames sugeridos e prescrições médicas.\n\n"
        f"Transcrição da consulta:\n{transcript.strip()}\n"
    )
    if extra_context and extra_context.strip():
        user += f"\nContexto adicional informado pelo médico:\n{extra_context.strip()}\n"
    user += "\nRetorne APENAS o JSON no formato especificado, sem comentários ou texto adicional."
    return [
        {"role": "system", "content": ANALYSIS_SYSTEM_PROMPT},
        {"role": "user", "content": user},
    ]


def format_transcript(segments: List[Dict[str, str]]) -> str:
    lines = []
    for segment in segments:
        text = (segment.get("text") or "").strip()
        if not text:
            continue
        speaker = segment.get("speaker")
        lines.append(f"{speaker}: {text}" if speaker else text)
    return "\n".join(lines)
